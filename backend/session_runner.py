"""
Simulation session runner.

Drives each running session on its own asyncio task:
1. Load the next batch of candles for every symbol through the cache
2. Feed one bar per tick to the session's strategy (or emit raw candles)
3. Append every emitted event to the session log with the next seq
4. Publish the event on the session topic for live subscribers

Tick cadence:
- replay: one bar every replay_ms_per_candle (default 15s)
- lagged_live: every max(10ms, 1000ms / speed), bars become available
  only once they are older than the decision clock (sim_now - lag)

Usage:
    runner = SessionRunner(event_store, loader, clock)
    runner.start_session(session)
    runner.pause(session.id)
    runner.resume(session.id)
    await runner.stop(session.id)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterator, List, Optional

from candle_loader import CandleLoader
from candles import Candle
from errors import InvalidSessionTransition
from replay_clock import ReplayClock
from sim_event_store import DEFAULT_EVENTS_LIMIT, SimEventStore
from sim_session import (
    EVENT_CANDLE,
    EVENT_STATUS,
    SessionStrategy,
    SimEvent,
    SimSession,
    SimSessionMode,
    SimSessionStatus,
    StrategyEvent,
    is_terminal,
    transition,
)
from sse_broadcaster import SSEBroadcaster, session_topic
from sse_broadcaster import broadcaster as default_broadcaster
from utils import align_to_grid, timeframe_to_ms

logger = logging.getLogger(__name__)

CANDLE_BATCH_SIZE = 100
DEFAULT_REPLAY_MS_PER_CANDLE = 15_000
DEFAULT_LAG_MS = 15 * 60 * 1000
MIN_LAGGED_TICK_MS = 10
STOP_WAIT_SECONDS = 5.0


@dataclass
class RunnerState:
    """In-memory state of one running session."""
    session: SimSession
    strategy: Optional[SessionStrategy]
    seq: int
    cursor_ms: int
    step_ms: int
    # ts -> symbol -> candle, filled one batch at a time
    pending: Dict[int, Dict[str, Candle]] = field(default_factory=dict)
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    finished: bool = False
    torn_down: bool = False

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def status(self) -> SimSessionStatus:
        return SimSessionStatus(self.session.status)


class SessionRunner:
    """
    Runs simulation sessions and owns their event sequences.

    Args:
        store: Session and event persistence
        loader: Candle loader for session data
        clock: Replay clock (decision time for lagged_live sessions)
        broadcaster: Event bus for live session events
        market_sim: Optional quote simulator; lagged_live sessions register
            their symbols under the session id while running
    """

    def __init__(
        self,
        store: SimEventStore,
        loader: CandleLoader,
        clock: ReplayClock,
        broadcaster: Optional[SSEBroadcaster] = None,
        market_sim=None,
    ):
        self.store = store
        self.loader = loader
        self.clock = clock
        self.broadcaster = broadcaster or default_broadcaster
        self.market_sim = market_sim
        self._runners: Dict[str, RunnerState] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_session(self, session: SimSession, strategy: Optional[SessionStrategy] = None) -> SimSession:
        """
        Start running a session. Must be called from the event loop.

        Raises:
            InvalidSessionTransition: If the session is already running here
                or is in a terminal state
        """
        if session.id in self._runners or session.is_terminal:
            raise InvalidSessionTransition(session.id, SimSessionStatus(session.status).value, "running")

        step_ms = timeframe_to_ms(session.timeframe)
        start_cursor = session.cursor_ms if session.cursor_ms is not None else session.start_ms
        seq = max(self.store.get_last_seq(session.id), session.last_seq or 0)

        state = RunnerState(
            session=session,
            strategy=strategy,
            seq=seq,
            cursor_ms=align_to_grid(start_cursor, step_ms),
            step_ms=step_ms,
        )
        self._runners[session.id] = state

        session.status = SimSessionStatus.RUNNING
        session.cursor_ms = state.cursor_ms
        session.error_message = None
        self.store.update_session(
            session.id, status=session.status, cursor_ms=state.cursor_ms, error_message=None
        )
        self._emit(state, EVENT_STATUS, {"status": SimSessionStatus.RUNNING.value}, ts=state.cursor_ms)

        state.resume_event.set()
        state.task = asyncio.create_task(self._run(state))
        logger.info(
            f"Session {session.id} started: {SimSessionMode(session.mode).value} "
            f"{', '.join(session.symbols)} {session.timeframe} from {state.cursor_ms}"
        )
        return session

    def pause(self, session_id: str) -> SimSession:
        """
        Pause a session. A session left "running" in the store by a previous
        process is marked paused there.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidSessionTransition: If the session is not running
        """
        state = self._runners.get(session_id)
        if state is None:
            session = self.store.get_session(session_id)
            transition(session_id, session.status, SimSessionStatus.PAUSED)
            logger.info(f"Session {session_id} paused (not running in this process)")
            return self._set_detached_status(session, SimSessionStatus.PAUSED)

        transition(session_id, state.status, SimSessionStatus.PAUSED)
        state.resume_event.clear()
        self._set_status(state, SimSessionStatus.PAUSED)
        logger.info(f"Session {session_id} paused at {state.cursor_ms}")
        return state.session

    def resume(self, session_id: str) -> SimSession:
        """
        Resume a paused session. A paused session with no runner in this
        process (e.g. after a restart) is started again from its cursor.

        Raises:
            SessionNotFound: If the session does not exist
            InvalidSessionTransition: If the session is not paused
        """
        state = self._runners.get(session_id)
        if state is None:
            session = self.store.get_session(session_id)
            if SimSessionStatus(session.status) != SimSessionStatus.PAUSED:
                raise InvalidSessionTransition(session_id, SimSessionStatus(session.status).value, "running")
            return self.start_session(session)

        transition(session_id, state.status, SimSessionStatus.RUNNING)
        self._set_status(state, SimSessionStatus.RUNNING)
        state.resume_event.set()
        logger.info(f"Session {session_id} resumed at {state.cursor_ms}")
        return state.session

    async def stop(self, session_id: str) -> SimSession:
        """
        Stop a session. Stopping an already terminal session is a no-op.

        Sessions not running in this process (e.g. after a restart) are
        stopped directly in the store.

        Raises:
            SessionNotFound: If the session does not exist
        """
        state = self._runners.get(session_id)
        if state is None:
            return self._stop_detached(session_id)

        self._finish(state, SimSessionStatus.STOPPED)
        await self._await_task(state)
        await self._teardown(state)
        return state.session

    async def stop_all(self):
        for session_id in list(self._runners):
            try:
                await self.stop(session_id)
            except Exception as e:
                logger.error(f"Failed to stop session {session_id}: {e}", exc_info=True)

    def _stop_detached(self, session_id: str) -> SimSession:
        session = self.store.get_session(session_id)
        if session.is_terminal:
            return session
        logger.info(f"Session {session_id} stopped (not running in this process)")
        return self._set_detached_status(session, SimSessionStatus.STOPPED)

    def _set_detached_status(self, session: SimSession, status: SimSessionStatus) -> SimSession:
        """Record a status change for a session that has no runner here."""
        seq = max(self.store.get_last_seq(session.id), session.last_seq or 0) + 1
        ts = session.cursor_ms if session.cursor_ms is not None else session.start_ms
        self.store.append_event(
            session.id,
            SimEvent(seq=seq, ts=ts, type=EVENT_STATUS, payload={"status": status.value}),
        )
        return self.store.update_session(session.id, status=status, last_seq=seq)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        state = self._runners.get(session_id)
        return state is not None and not state.finished

    def active_session_ids(self) -> List[str]:
        return [sid for sid, state in self._runners.items() if not state.finished]

    def get_state(self, session_id: str) -> Optional[Dict]:
        state = self._runners.get(session_id)
        if state is None:
            return None
        return {
            **state.session.to_dict(),
            "seq": state.seq,
            "cursorMs": state.cursor_ms,
            "running": not state.finished,
        }

    # ------------------------------------------------------------------
    # Event emission
    # ------------------------------------------------------------------

    def _emit(self, state: RunnerState, event_type: str, payload: Dict, ts: Optional[int] = None) -> SimEvent:
        """Assign the next seq, persist and publish. No awaits: seq stays contiguous."""
        state.seq += 1
        event = SimEvent(
            seq=state.seq,
            ts=ts if ts is not None else state.cursor_ms,
            type=event_type,
            payload=payload,
        )
        self.store.append_event(state.session_id, event)
        state.session.last_seq = state.seq
        self.broadcaster.publish(event_type, event.to_dict(), topic=session_topic(state.session_id))
        return event

    def _set_status(self, state: RunnerState, status: SimSessionStatus, error_message: Optional[str] = None):
        state.session.status = status
        state.session.error_message = error_message
        payload = {"status": status.value}
        if error_message:
            payload["errorMessage"] = error_message
        self._emit(state, EVENT_STATUS, payload)
        self.store.update_session(
            state.session_id,
            status=status,
            last_seq=state.seq,
            cursor_ms=state.cursor_ms,
            error_message=error_message,
        )

    def _finish(self, state: RunnerState, status: SimSessionStatus, error_message: Optional[str] = None):
        """Move to a terminal status. Only the first call emits."""
        if state.finished:
            return
        state.finished = True
        self._set_status(state, status, error_message)
        state.stop_event.set()
        state.resume_event.set()

        level = logging.WARNING if status == SimSessionStatus.FAILED else logging.INFO
        suffix = f": {error_message}" if error_message else ""
        logger.log(level, f"Session {state.session_id} {status.value}{suffix}")

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _tick_interval(self, session: SimSession) -> float:
        if SimSessionMode(session.mode) == SimSessionMode.LAGGED_LIVE:
            speed = session.speed or 1.0
            return max(MIN_LAGGED_TICK_MS, 1000 / speed) / 1000
        return (session.replay_ms_per_candle or DEFAULT_REPLAY_MS_PER_CANDLE) / 1000

    async def _run(self, state: RunnerState):
        if self.market_sim is not None and SimSessionMode(state.session.mode) == SimSessionMode.LAGGED_LIVE:
            try:
                await self.market_sim.ensure_session_symbols(state.session_id, state.session.symbols)
            except Exception as e:
                logger.error(f"Failed to register quotes for session {state.session_id}: {e}")

        try:
            while not state.finished:
                try:
                    await asyncio.wait_for(state.stop_event.wait(), timeout=self._tick_interval(state.session))
                    break
                except asyncio.TimeoutError:
                    pass

                await state.resume_event.wait()
                if state.finished:
                    break

                try:
                    await self._tick(state)
                except Exception as e:
                    logger.error(f"Error in session {state.session_id} tick: {e}", exc_info=True)
                    self._finish(state, SimSessionStatus.FAILED, str(e))
        finally:
            await self._teardown(state)

    async def _tick(self, state: RunnerState):
        if state.cursor_ms not in state.pending:
            if not await self._load_batch(state):
                return
            # Paused or stopped while loading
            if state.finished or state.status != SimSessionStatus.RUNNING:
                return

        bar = state.pending.pop(state.cursor_ms, None)
        if not bar:
            return

        for symbol in state.session.symbols:
            candle = bar.get(symbol)
            if candle is None:
                continue
            for event in self._evaluate(state, symbol, candle):
                self._emit(state, event.type, event.payload, ts=event.ts)

        state.cursor_ms += state.step_ms
        state.session.cursor_ms = state.cursor_ms
        self.store.update_session(state.session_id, cursor_ms=state.cursor_ms, last_seq=state.seq)

        end_ms = state.session.end_ms
        if end_ms is not None and state.cursor_ms >= end_ms:
            self._finish(state, SimSessionStatus.FINISHED)

    def _evaluate(self, state: RunnerState, symbol: str, candle: Candle) -> List[StrategyEvent]:
        if state.strategy is None:
            return [StrategyEvent(ts=candle.ts, type=EVENT_CANDLE, payload={"symbol": symbol, **candle.to_dict()})]
        return list(state.strategy.on_candle(symbol, candle) or [])

    def _fetch_end(self, state: RunnerState) -> int:
        session = state.session
        batch_end = state.cursor_ms + state.step_ms * CANDLE_BATCH_SIZE
        if SimSessionMode(session.mode) == SimSessionMode.LAGGED_LIVE:
            decision = align_to_grid(self.clock.decision_now(session.lag_ms or DEFAULT_LAG_MS), state.step_ms)
            limit = decision if session.end_ms is None else min(decision, session.end_ms)
            return min(batch_end, limit)
        if session.end_ms is not None:
            return min(batch_end, session.end_ms)
        return batch_end

    async def _load_batch(self, state: RunnerState) -> bool:
        """
        Load the next batch into state.pending.

        Returns:
            True when bars are available at the cursor
        """
        session = state.session
        fetch_end = self._fetch_end(state)

        if fetch_end <= state.cursor_ms:
            if SimSessionMode(session.mode) == SimSessionMode.REPLAY:
                self._finish(state, SimSessionStatus.FINISHED)
            # lagged_live: caught up with decision time, retry next tick
            return False

        gap_count = 0
        batch: Dict[int, Dict[str, Candle]] = {}
        for symbol in session.symbols:
            result = await self.loader.load_candles(
                symbol,
                session.timeframe,
                state.cursor_ms,
                fetch_end,
                exchange=session.exchange,
                max_bars=CANDLE_BATCH_SIZE,
            )
            gap_count += len(result.gaps)
            for candle in result.candles:
                batch.setdefault(candle.ts, {})[symbol] = candle

        if gap_count:
            self._finish(state, SimSessionStatus.FAILED, f"Data gaps detected: {gap_count} gaps found")
            return False

        if not batch:
            if SimSessionMode(session.mode) == SimSessionMode.REPLAY:
                self._finish(state, SimSessionStatus.FINISHED)
            return False

        state.pending = batch
        return state.cursor_ms in batch

    async def _await_task(self, state: RunnerState):
        task = state.task
        if task is None or task.done() or task is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=STOP_WAIT_SECONDS)
        except asyncio.TimeoutError:
            task.cancel()
            logger.warning(f"Session {state.session_id} task did not exit in time, cancelled")

    async def _teardown(self, state: RunnerState):
        """Release per-session resources exactly once."""
        if state.torn_down:
            return
        state.torn_down = True
        state.pending.clear()
        self._runners.pop(state.session_id, None)
        if self.market_sim is not None:
            try:
                await self.market_sim.remove_session(state.session_id)
            except Exception as e:
                logger.error(f"Failed to release quotes for session {state.session_id}: {e}")
        logger.debug(f"Session {state.session_id} torn down")


async def stream_session_events(
    store: SimEventStore,
    session_id: str,
    from_seq: int = 0,
    broadcaster: Optional[SSEBroadcaster] = None,
    heartbeat_seconds: float = 15.0,
    page_size: int = DEFAULT_EVENTS_LIMIT,
) -> AsyncIterator[Dict]:
    """
    Yield a session's events with seq > from_seq, then follow live events.

    Subscribes before reading the backlog so nothing is lost in between;
    live events already covered by the backlog are skipped by seq, and
    anything dropped from a full queue is re-read from the store. Yields a
    heartbeat dict after each quiet period and ends after the terminal
    status event.
    """
    bus = broadcaster or default_broadcaster
    queue = bus.subscribe(session_topic(session_id))
    try:
        last_seq = from_seq
        for event in _read_backlog(store, session_id, last_seq, page_size):
            yield event.to_dict()
            last_seq = event.seq
            if event.is_terminal:
                return

        if is_terminal(store.get_session(session_id).status):
            # Terminal event written between the backlog read and now
            for event in _read_backlog(store, session_id, last_seq, page_size):
                yield event.to_dict()
            return

        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield bus.heartbeat_event()
                continue

            data = message.get("payload") or {}
            seq = data.get("seq", 0)
            if seq <= last_seq:
                continue

            if seq > last_seq + 1:
                events = store.get_events(session_id, from_seq=last_seq, limit=seq - last_seq)
            else:
                events = [SimEvent(seq=seq, ts=data.get("ts", 0), type=data.get("type", ""),
                                   payload=data.get("payload") or {})]

            for event in events:
                yield event.to_dict()
                last_seq = event.seq
                if event.is_terminal:
                    return
    finally:
        bus.unsubscribe(queue)


def _read_backlog(store: SimEventStore, session_id: str, from_seq: int, page_size: int) -> Iterator[SimEvent]:
    """Every persisted event after from_seq, read page by page."""
    while True:
        page = store.get_events(session_id, from_seq=from_seq, limit=page_size)
        yield from page
        if len(page) < page_size:
            return
        from_seq = page[-1].seq
