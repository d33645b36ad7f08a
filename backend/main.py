from fastapi import FastAPI, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from typing import List, Optional
import logging

from pydantic import BaseModel, Field

from config import SimSettings, configure_logging
from errors import Forbidden, InvalidSessionTransition, SessionNotFound, ValidationError
from market_context import MarketContext
from market_data_service import MarketDataRequest
from market_sim_service import GLOBAL_SESSION_KEY
from session_runner import stream_session_events
from sim_session import SimSession, SimSessionMode, new_session_id
from utils import normalize_symbol, normalize_timeframe, now_ms, require_finite_ms

logger = logging.getLogger(__name__)

# ============================================================================
# STARTUP INSTRUCTIONS
# ============================================================================
# From the backend/ directory:
#   python -m uvicorn main:app --reload --host 0.0.0.0 --port 8000
#
# Configuration is read from environment variables (see config.py).
# SIM_ENABLED=0 turns the replay clock, quote simulator and backfill off.
# ============================================================================

app = FastAPI(title="Market Replay & Simulation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SSE_HEARTBEAT_SECONDS = 15.0


@app.on_event("startup")
async def startup_event():
    # Tests install their own context before the app starts
    if getattr(app.state, "context", None) is None:
        settings = SimSettings.from_env()
        configure_logging(settings.log_level)
        app.state.context = MarketContext.from_settings(settings)
    context: MarketContext = app.state.context
    await context.start()
    logger.info(
        f"Backend started: sim={'on' if context.clock.is_enabled else 'off'}, "
        f"feed={context.settings.sim_feed_mode}, symbols={len(context.settings.sim_symbols)}"
    )


@app.on_event("shutdown")
async def shutdown_event():
    context = getattr(app.state, "context", None)
    if context is not None:
        await context.shutdown()


def get_context() -> MarketContext:
    return app.state.context


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(Forbidden)
async def forbidden_handler(request: Request, exc: Forbidden):
    return JSONResponse(status_code=403, content={"error": str(exc)})


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(InvalidSessionTransition)
async def invalid_transition_handler(request: Request, exc: InvalidSessionTransition):
    return JSONResponse(status_code=409, content={"error": str(exc)})


# ============================================================================
# CLOCK & MARKET DATA
# ============================================================================

@app.get("/")
async def root():
    return {"message": "Market Replay & Simulation API"}


@app.get("/clock")
async def get_clock(context: MarketContext = Depends(get_context)):
    """Replay clock state with the current simulated and decision times."""
    clock = context.clock
    return {
        "enabled": clock.is_enabled,
        "simNow": clock.sim_now(),
        "decisionNow": clock.decision_now(),
        "wallNow": now_ms(),
        "state": clock.to_dict(),
    }


@app.get("/candles")
async def get_candles(
    symbol: str,
    timeframe: str = "1h",
    from_ts: int = Query(..., alias="fromTs"),
    to_ts: int = Query(..., alias="toTs"),
    exchange: str = "binance_spot",
    user_id: Optional[str] = Query(None, alias="userId"),
    strategy_id: Optional[str] = Query(None, alias="strategyId"),
    max_candles: Optional[int] = Query(None, alias="maxCandles"),
    context: MarketContext = Depends(get_context),
):
    """
    Historical candles for [fromTs, toTs).

    Served from the cache; see MarketDataService for the synthetic and
    quick-import fallbacks.
    """
    result = await context.market_data.get_market_candles(MarketDataRequest(
        symbol=symbol,
        timeframe=timeframe,
        from_ts=from_ts,
        to_ts=to_ts,
        exchange=exchange,
        user_id=user_id,
        strategy_id=strategy_id,
        max_candles=max_candles,
    ))
    return {"symbol": normalize_symbol(symbol), "timeframe": normalize_timeframe(timeframe), **result.to_dict()}


@app.get("/market/quotes")
async def get_quotes(
    symbols: Optional[str] = None,
    session_key: str = Query(GLOBAL_SESSION_KEY, alias="sessionKey"),
    context: MarketContext = Depends(get_context),
):
    """Latest simulated quotes. symbols is a comma-separated list."""
    wanted: List[str] = [s for s in (symbols or "").split(",") if s.strip()]
    if wanted and session_key != GLOBAL_SESSION_KEY:
        await context.market_sim.ensure_session_symbols(session_key, wanted)
    quotes = context.market_sim.get_latest_quotes(session_key, wanted or None)
    return {
        "sessionKey": session_key,
        "simNow": context.clock.sim_now(),
        "quotes": [q.to_dict() for q in quotes],
    }


@app.get("/market/candles/live")
async def get_live_candles(
    symbol: str,
    limit: int = 200,
    session_key: str = Query(GLOBAL_SESSION_KEY, alias="sessionKey"),
    context: MarketContext = Depends(get_context),
):
    """One-minute candles built from simulated ticks, newest last."""
    if session_key != GLOBAL_SESSION_KEY:
        await context.market_sim.ensure_session_symbols(session_key, [symbol], history_limit=limit)
    candles = context.market_sim.get_synthetic_candles(session_key, symbol, max(0, limit))
    return {
        "symbol": normalize_symbol(symbol),
        "sessionKey": session_key,
        "candles": [c.to_dict() for c in candles],
    }


@app.get("/market/status")
async def get_market_status(context: MarketContext = Depends(get_context)):
    return {
        "sim": context.market_sim.get_status(),
        "history": {
            "running": context.history_loader.is_running,
            "runs": context.history_loader.runs_count,
        },
        "activeSessions": context.runner.active_session_ids(),
    }


# ============================================================================
# SIMULATION SESSIONS
# ============================================================================

class SimSessionRequest(BaseModel):
    symbols: List[str] = Field(..., min_length=1)
    timeframe: str = "1m"
    start_ms: int = Field(..., alias="startMs")
    end_ms: Optional[int] = Field(None, alias="endMs")
    speed: float = 1.0
    mode: SimSessionMode = SimSessionMode.REPLAY
    exchange: Optional[str] = None
    strategy_id: Optional[str] = Field(None, alias="strategyId")
    lag_ms: Optional[int] = Field(None, alias="lagMs")
    replay_ms_per_candle: Optional[int] = Field(None, alias="replayMsPerCandle")

    model_config = {"populate_by_name": True}


@app.post("/sim/sessions")
async def create_sim_session(
    request: SimSessionRequest,
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    """Create a simulation session and start running it."""
    symbols = list(dict.fromkeys(s for s in (normalize_symbol(x) for x in request.symbols) if s))
    if not symbols:
        raise ValidationError("At least one symbol is required")
    start_ms = require_finite_ms(request.start_ms, "startMs")
    end_ms = require_finite_ms(request.end_ms, "endMs") if request.end_ms is not None else None
    if end_ms is not None and end_ms <= start_ms:
        raise ValidationError(f"endMs {end_ms} must be after startMs {start_ms}")
    if request.speed <= 0:
        raise ValidationError("speed must be positive")

    session = SimSession(
        id=new_session_id(),
        owner_id=user_id,
        strategy_id=request.strategy_id,
        symbols=symbols,
        timeframe=normalize_timeframe(request.timeframe),
        exchange=request.exchange,
        start_ms=start_ms,
        end_ms=end_ms,
        speed=request.speed,
        mode=request.mode,
        lag_ms=request.lag_ms,
        replay_ms_per_candle=request.replay_ms_per_candle,
    )
    context.event_store.create_session(session)
    context.runner.start_session(session)
    return session.to_dict()


@app.get("/sim/sessions")
async def list_sim_sessions(
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    return {"sessions": [s.to_dict() for s in context.event_store.list_sessions(owner_id=user_id)]}


@app.get("/sim/sessions/{session_id}")
async def get_sim_session(
    session_id: str,
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    session = context.event_store.get_session(session_id, owner_id=user_id)
    live = context.runner.get_state(session_id)
    return live or {**session.to_dict(), "running": False}


@app.post("/sim/sessions/{session_id}/pause")
async def pause_sim_session(
    session_id: str,
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    context.event_store.get_session(session_id, owner_id=user_id)
    return context.runner.pause(session_id).to_dict()


@app.post("/sim/sessions/{session_id}/resume")
async def resume_sim_session(
    session_id: str,
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    context.event_store.get_session(session_id, owner_id=user_id)
    return context.runner.resume(session_id).to_dict()


@app.post("/sim/sessions/{session_id}/stop")
async def stop_sim_session(
    session_id: str,
    user_id: str = Header("anonymous", alias="X-User-Id"),
    context: MarketContext = Depends(get_context),
):
    context.event_store.get_session(session_id, owner_id=user_id)
    session = await context.runner.stop(session_id)
    return session.to_dict()


@app.get("/sim/sessions/{session_id}/events")
async def stream_sim_session_events(
    session_id: str,
    request: Request,
    from_seq: int = Query(0, alias="fromSeq", ge=0),
    user_id: str = Header("anonymous", alias="X-User-Id"),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
    context: MarketContext = Depends(get_context),
):
    """
    Session events as Server-Sent Events.

    Replays persisted events after fromSeq (or Last-Event-ID on reconnect),
    then streams live events until the session reaches a terminal status.
    """
    context.event_store.get_session(session_id, owner_id=user_id)
    if last_event_id and last_event_id.isdigit():
        from_seq = max(from_seq, int(last_event_id))

    bus = context.broadcaster

    async def gen():
        yield "retry: 1000\n\n"
        async for event in stream_session_events(
            context.event_store,
            session_id,
            from_seq=from_seq,
            broadcaster=bus,
            heartbeat_seconds=SSE_HEARTBEAT_SECONDS,
        ):
            if await request.is_disconnected():
                break
            yield bus.format_sse(event, event_id=event.get("seq"))

    return StreamingResponse(gen(), media_type="text/event-stream", headers=SSE_HEADERS)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
