"""
Market simulation service.

Keeps live quotes moving for any number of sessions: the distinguished
"global" session plus caller-scoped sessions, each with its own symbols.
Every tick (driven by the replay clock) advances each symbol either by
interpolating inside a real cached one-minute bar (candle feed) or by a
seeded geometric random walk, rolls one-minute buckets into a trailing
history, and publishes a quote on the session's topic.

Only the global session's quotes are persisted, on a longer interval than
the tick rate.

Candle-feed lookups run as independent per-symbol tasks. A tick waits for
all outstanding lookups together under one short deadline, outside the
lock, and then reads only lookups that have already resolved; anything
still pending falls back to the random walk for that tick.

Usage:
    service = MarketSimService(settings, clock, store, loader)
    await service.ensure_started()
    await service.ensure_session_symbols("session-42", ["ETHUSDT"])
    service.get_latest_quotes("session-42")
    await service.stop()
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from candle_store import CandleStore
from candles import Candle, QuoteUpdate
from config import SimSettings
from price_noise import compute_deterministic_price
from replay_clock import ReplayClock
from rng import SeededRng, hash_string32
from sse_broadcaster import SSEBroadcaster, broadcaster as default_broadcaster, quotes_topic
from utils import align_to_grid, clamp, normalize_symbol, now_ms

logger = logging.getLogger(__name__)

GLOBAL_SESSION_KEY = "global"
ONE_MINUTE_MS = 60_000
DEFAULT_START_PRICE = 100.0
MIN_PRICE = 0.0001
Z_CLAMP = 4.0
# Shared upper bound on how long one tick waits for all candle-feed lookups
CANDLE_LOOKUP_WAIT_SECONDS = 0.5


class QuoteMode(str, Enum):
    CANDLE = "candle"
    SYNTHETIC = "synthetic"


@dataclass
class SymbolState:
    rng: SeededRng
    last_price: Optional[float] = None
    last_ts: int = 0
    mode: QuoteMode = QuoteMode.SYNTHETIC
    initialized: bool = False


@dataclass
class CandleHistory:
    current_start: int = 0
    current: Optional[Candle] = None
    history: List[Candle] = field(default_factory=list)


@dataclass
class SessionState:
    symbols: List[str] = field(default_factory=list)
    symbol_state: Dict[str, SymbolState] = field(default_factory=dict)
    quotes: Dict[str, QuoteUpdate] = field(default_factory=dict)
    candles: Dict[str, CandleHistory] = field(default_factory=dict)


class MarketSimService:
    """
    Multi-session live quote simulator.

    Args:
        settings: Tick rate, feed mode, seeds, volatility and drift
        clock: Replay clock supplying sim_now
        store: Candle cache (fallback prices, quote persistence)
        loader: Candle loader used by the candle feed
        broadcaster: Event bus for quote notifications
        wall_time_ms: Wall clock used for the persistence interval
    """

    def __init__(
        self,
        settings: SimSettings,
        clock: ReplayClock,
        store: CandleStore,
        loader=None,
        broadcaster: Optional[SSEBroadcaster] = None,
        wall_time_ms=now_ms,
    ):
        self.settings = settings
        self.clock = clock
        self.store = store
        self.loader = loader
        self.broadcaster = broadcaster or default_broadcaster
        self._wall_time_ms = wall_time_ms

        self._sessions: Dict[str, SessionState] = {}
        # symbol -> (minute bucket, lookup task); a resolved None is a cached miss
        self._candle_lookups: Dict[str, Tuple[int, asyncio.Task]] = {}
        self._default_symbols: List[str] = []
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._started = False
        self._last_persist_at = 0
        self.ticks_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._started

    async def ensure_started(self):
        """Start the tick loop once. No-op when already running or disabled."""
        if self._started or not self.clock.is_enabled:
            return

        self.clock.ensure_initialized()
        self._default_symbols = self._load_symbols()
        await self.ensure_session_symbols(
            GLOBAL_SESSION_KEY, self._default_symbols, self.settings.sim_history_candles
        )
        await self.tick()

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        self._started = True
        logger.info(
            f"Market simulation started: {len(self._default_symbols)} symbols, "
            f"tick={self.settings.sim_tick_ms}ms, feed={self.settings.sim_feed_mode}"
        )

    async def stop(self):
        """Stop the tick loop and wait for it to exit."""
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
        for _, pending in list(self._candle_lookups.values()):
            pending.cancel()
        self._candle_lookups.clear()
        if self._started:
            logger.info("Market simulation stopped")
        self._started = False

    async def _run_loop(self):
        interval = self.settings.sim_tick_ms / 1000
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in market simulation tick: {e}", exc_info=True)

    def _load_symbols(self) -> List[str]:
        symbols = [normalize_symbol(s) for s in self.settings.sim_symbols]
        return list(dict.fromkeys(s for s in symbols if s))

    def get_symbols(self) -> List[str]:
        return list(self._default_symbols)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def ensure_session_symbols(
        self,
        session_key: str,
        symbols: List[str],
        history_limit: Optional[int] = None,
    ):
        """
        Register symbols for a session while the loop keeps running.

        New symbols get a seeded RNG and a warm synthetic history, and are
        ticked immediately when the service is already running.
        """
        session_key = session_key or GLOBAL_SESSION_KEY
        async with self._lock:
            state = self._sessions.setdefault(session_key, SessionState())
            added = False
            limit = max(history_limit or 0, self.settings.sim_history_candles)

            for symbol in (normalize_symbol(s) for s in symbols):
                if not symbol:
                    continue
                if symbol not in state.symbols:
                    state.symbols.append(symbol)
                    added = True
                if symbol not in state.symbol_state:
                    state.symbol_state[symbol] = SymbolState(
                        rng=SeededRng(self.symbol_seed(session_key, symbol))
                    )
                    added = True
                if symbol not in state.candles:
                    state.candles[symbol] = CandleHistory()
                    added = True
                self._ensure_synthetic_history(state, symbol, limit)

            if added:
                logger.info(f"Session {session_key} now tracks {len(state.symbols)} symbols")
            if added and self._started:
                self._tick_locked(self.clock.sim_now())

    async def remove_session(self, session_key: str):
        """Forget a caller-scoped session. The global session is never removed."""
        if not session_key or session_key == GLOBAL_SESSION_KEY:
            return
        async with self._lock:
            if self._sessions.pop(session_key, None) is not None:
                logger.info(f"Session {session_key} removed from market simulation")

    def symbol_seed(self, session_key: str, symbol: str) -> int:
        """
        RNG seed for a symbol.

        In "session" seed mode each scoped session gets its own path; in
        "global" mode every session tracking a symbol moves identically.
        """
        base = self.settings.sim_seed
        if self.settings.per_session_seeds and session_key != GLOBAL_SESSION_KEY:
            session_seed = hash_string32(f"{base}:{session_key}")
            return hash_string32(f"{session_seed}:{symbol}")
        return hash_string32(f"{base}:{symbol}")

    def _noise_seed(self, session_key: str) -> str:
        if self.settings.per_session_seeds:
            return f"{self.settings.sim_seed}:{session_key}"
        return str(self.settings.sim_seed)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_latest_quotes(self, session_key: str, symbols: Optional[List[str]] = None) -> List[QuoteUpdate]:
        state = self._sessions.get(session_key or GLOBAL_SESSION_KEY)
        if state is None:
            return []
        if not symbols:
            return list(state.quotes.values())
        wanted = (normalize_symbol(s) for s in symbols)
        return [state.quotes[s] for s in wanted if s in state.quotes]

    def get_latest_quote(self, session_key: str, symbol: str) -> Optional[QuoteUpdate]:
        state = self._sessions.get(session_key or GLOBAL_SESSION_KEY)
        if state is None:
            return None
        return state.quotes.get(normalize_symbol(symbol))

    def get_last_known_price(self, session_key: str, symbol: str) -> Optional[float]:
        state = self._sessions.get(session_key or GLOBAL_SESSION_KEY)
        if state is None:
            return None
        symbol_state = state.symbol_state.get(normalize_symbol(symbol))
        return symbol_state.last_price if symbol_state else None

    def get_synthetic_candles(self, session_key: str, symbol: str, limit: int) -> List[Candle]:
        """Trailing one-minute history plus the in-progress bar."""
        state = self._sessions.get(session_key or GLOBAL_SESSION_KEY)
        if state is None:
            return []
        history = state.candles.get(normalize_symbol(symbol))
        if history is None:
            return []
        combined = list(history.history)
        if history.current is not None:
            combined.append(history.current)
        return combined[-limit:] if limit > 0 else []

    def session_keys(self) -> List[str]:
        return list(self._sessions)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self):
        """Advance every symbol in every session by one step."""
        if not self.clock.is_enabled:
            return
        sim_now = self.clock.sim_now()
        if self.settings.use_candle_feed:
            await self._prefetch_candles(sim_now)
        async with self._lock:
            self._tick_locked(sim_now)

    def _tick_locked(self, sim_now: int):
        if not self.clock.is_enabled:
            return

        events: List[Tuple[str, QuoteUpdate]] = []
        bucket = align_to_grid(sim_now, ONE_MINUTE_MS)

        for session_key, state in list(self._sessions.items()):
            for symbol in list(state.symbols):
                symbol_state = state.symbol_state.get(symbol)
                if symbol_state is None:
                    continue
                if not symbol_state.initialized:
                    self._ensure_synthetic_history(state, symbol, self.settings.sim_history_candles)

                price = None
                mode = QuoteMode.SYNTHETIC

                if self.settings.use_candle_feed:
                    candle = self._resolved_candle(symbol, bucket)
                    if candle is not None:
                        price = compute_deterministic_price(
                            candle, sim_now, symbol, self._noise_seed(session_key)
                        )
                        mode = QuoteMode.CANDLE

                if price is None:
                    fallback = self._fallback_price(symbol, symbol_state)
                    price = self._synthetic_price(symbol_state, sim_now, fallback)

                symbol_state.last_price = price
                symbol_state.last_ts = sim_now
                symbol_state.mode = mode

                self._update_candle_history(state, symbol, sim_now, price)

                update = QuoteUpdate(symbol=symbol, ts=sim_now, price=price)
                state.quotes[symbol] = update
                events.append((session_key, update))

        for session_key, update in events:
            self.broadcaster.publish(
                "quote",
                {"sessionKey": session_key, **update.to_dict()},
                topic=quotes_topic(session_key),
            )

        self.ticks_count += 1
        self._maybe_persist()

    def _maybe_persist(self):
        wall_now = self._wall_time_ms()
        if wall_now - self._last_persist_at < self.settings.sim_persist_interval_ms:
            return
        global_state = self._sessions.get(GLOBAL_SESSION_KEY)
        if global_state is None or not global_state.quotes:
            return
        self._last_persist_at = wall_now
        self.store.upsert_live_quotes(global_state.quotes.values())

    # ------------------------------------------------------------------
    # Candle feed
    # ------------------------------------------------------------------

    async def _prefetch_candles(self, sim_now: int):
        """
        Start a lookup for every tracked symbol's current bucket and wait for
        the outstanding ones together, bounded by CANDLE_LOOKUP_WAIT_SECONDS.
        """
        if self.loader is None:
            return

        bucket = align_to_grid(sim_now, ONE_MINUTE_MS)
        symbols = {s for state in list(self._sessions.values()) for s in state.symbols}
        pending = [
            task for task in (self._request_candle(symbol, bucket) for symbol in symbols)
            if not task.done()
        ]
        if pending:
            await asyncio.wait(pending, timeout=CANDLE_LOOKUP_WAIT_SECONDS)

    def _request_candle(self, symbol: str, bucket: int) -> asyncio.Task:
        """Lookup task for (symbol, bucket), replacing one for an older bucket."""
        current = self._candle_lookups.get(symbol)
        if current is not None:
            if current[0] == bucket:
                return current[1]
            current[1].cancel()

        task = asyncio.create_task(self._load_bucket(symbol, bucket))
        self._candle_lookups[symbol] = (bucket, task)
        return task

    def _resolved_candle(self, symbol: str, bucket: int) -> Optional[Candle]:
        """Bar for the bucket if its lookup has finished; never waits."""
        current = self._candle_lookups.get(symbol)
        if current is None or current[0] != bucket:
            return None
        task = current[1]
        if not task.done() or task.cancelled():
            return None
        return task.result()

    async def _load_bucket(self, symbol: str, bucket: int) -> Optional[Candle]:
        try:
            result = await self.loader.load_candles(
                symbol,
                "1m",
                bucket,
                bucket + ONE_MINUTE_MS,
                exchange=self.settings.sim_feed_exchange,
                max_bars=5,
            )
        except Exception as e:
            logger.error(f"Candle lookup failed for {symbol}: {e}", exc_info=True)
            return None
        return result.candles[0] if result.candles else None

    # ------------------------------------------------------------------
    # Synthetic walk
    # ------------------------------------------------------------------

    def _ensure_synthetic_history(self, state: SessionState, symbol: str, count: int):
        """Seed a warm trailing history ending at the current minute."""
        symbol_state = state.symbol_state.get(symbol)
        history = state.candles.get(symbol)
        if symbol_state is None or history is None or symbol_state.initialized:
            return

        sim_now = self.clock.sim_now()
        current_start = align_to_grid(sim_now, ONE_MINUTE_MS)
        start_ts = current_start - count * ONE_MINUTE_MS
        wick = self.settings.sim_vol_pct_per_min / 100 * 0.5

        price = self._fallback_price(symbol, symbol_state)
        candles = []
        for i in range(count):
            close = self._synthetic_step(price, symbol_state.rng, 1.0)
            high = max(price, close) * (1 + symbol_state.rng.next() * wick)
            low = min(price, close) * (1 - symbol_state.rng.next() * wick)
            candles.append(Candle(
                ts=start_ts + i * ONE_MINUTE_MS,
                open=price,
                high=max(MIN_PRICE, high),
                low=max(MIN_PRICE, low),
                close=close,
                volume=1.0,
            ))
            price = close

        history.history = candles
        history.current_start = current_start
        history.current = Candle(ts=current_start, open=price, high=price, low=price, close=price, volume=1.0)

        symbol_state.last_price = price
        symbol_state.last_ts = current_start
        symbol_state.initialized = True

    def _update_candle_history(self, state: SessionState, symbol: str, sim_now: int, price: float):
        history = state.candles.get(symbol)
        if history is None:
            return

        bucket = align_to_grid(sim_now, ONE_MINUTE_MS)
        if history.current is None or history.current_start == 0 or bucket > history.current_start:
            if history.current is not None and history.current_start:
                history.history.append(history.current)
                limit = self.settings.sim_history_candles
                if len(history.history) > limit:
                    history.history = history.history[-limit:]
            history.current_start = bucket
            history.current = Candle(ts=bucket, open=price, high=price, low=price, close=price, volume=1.0)
            return

        current = history.current
        history.current = Candle(
            ts=current.ts,
            open=current.open,
            high=max(current.high, price),
            low=min(current.low, price),
            close=price,
            volume=current.volume + 1,
        )

    def _fallback_price(self, symbol: str, symbol_state: SymbolState) -> float:
        """Last simulated price, else the latest cached close, else the default."""
        last = symbol_state.last_price
        if last is not None and math.isfinite(last) and last > 0:
            return last

        latest = self.store.get_latest_candle(symbol)
        if latest is not None and math.isfinite(latest.close) and latest.close > 0:
            return latest.close

        return DEFAULT_START_PRICE

    def _synthetic_step(self, price: float, rng: SeededRng, dt_minutes: float) -> float:
        vol = self.settings.sim_vol_pct_per_min / 100 * math.sqrt(dt_minutes)
        drift = self.settings.sim_drift_pct_per_day / 100 * (dt_minutes / 1440)
        z = clamp(rng.normal(), -Z_CLAMP, Z_CLAMP)
        return max(MIN_PRICE, price * math.exp(drift + vol * z))

    def _synthetic_price(self, symbol_state: SymbolState, sim_now: int, seed_price: float) -> float:
        base = seed_price if seed_price > 0 else DEFAULT_START_PRICE
        last_ts = symbol_state.last_ts or sim_now - self.settings.sim_tick_ms
        elapsed_minutes = max(1 / 60, (sim_now - last_ts) / ONE_MINUTE_MS)
        return self._synthetic_step(base, symbol_state.rng, elapsed_minutes)

    def get_status(self) -> Dict:
        return {
            "running": self._started,
            "feedMode": self.settings.sim_feed_mode,
            "seedMode": self.settings.sim_session_seed_mode,
            "tickMs": self.settings.sim_tick_ms,
            "sessions": {
                key: len(state.symbols) for key, state in self._sessions.items()
            },
            "ticks": self.ticks_count,
        }
