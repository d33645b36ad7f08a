"""
Periodic history backfill.

Keeps a trailing window of candles cached for every tracked symbol and
timeframe so sessions and the quote simulator start from warm data.

Each run:
1. Reads decision time from the replay clock
2. For each symbol x timeframe, takes [align(decision) - lookback, align(decision))
3. Loads the missing runs through the candle loader in 2000-bar chunks

A failing series is logged and skipped; runs never overlap.
"""

import asyncio
import logging
from typing import List, Optional

from candle_loader import CandleLoader
from candle_store import CandleStore
from candles import find_missing_ranges
from config import SimSettings
from replay_clock import ReplayClock
from utils import align_to_grid, normalize_symbol, normalize_timeframe, timeframe_to_ms

logger = logging.getLogger(__name__)

MAX_BARS_PER_REQUEST = 2000


class HistoryCandleLoader:
    """
    Args:
        settings: Symbols, timeframes, lookback and loop interval
        clock: Replay clock supplying decision time
        store: Candle cache
        loader: Candle loader used to fill missing runs
        exchange: Exchange to backfill (defaults to the loader's default)
    """

    def __init__(
        self,
        settings: SimSettings,
        clock: ReplayClock,
        store: CandleStore,
        loader: CandleLoader,
        exchange: Optional[str] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.store = store
        self.loader = loader
        self.exchange = exchange or loader.default_exchange()
        self.symbols: List[str] = list(dict.fromkeys(
            s for s in (normalize_symbol(x) for x in settings.sim_symbols) if s
        ))
        self.timeframes: List[str] = list(dict.fromkeys(
            normalize_timeframe(tf) for tf in settings.sim_history_timeframes
        ))
        self._running = False
        self._started = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.runs_count = 0

    @property
    def is_running(self) -> bool:
        return self._started

    async def ensure_started(self):
        """Run once, then every SIM_HISTORY_LOADER_MS. No-op when disabled."""
        if self._started or not self.clock.is_enabled:
            return
        self.clock.ensure_initialized()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        self._started = True
        logger.info(
            f"History loader started: {len(self.symbols)} symbols x {self.timeframes} "
            f"every {self.settings.sim_history_loader_ms}ms from {self.exchange}"
        )

    async def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except asyncio.TimeoutError:
                task.cancel()
        if self._started:
            logger.info("History loader stopped")
        self._started = False

    async def _run_loop(self):
        interval = self.settings.sim_history_loader_ms / 1000
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in history loader run: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """
        Backfill every series once.

        Returns:
            Number of missing runs attempted (0 when a run is already in progress)
        """
        if self._running:
            logger.debug("History loader run already in progress, skipping")
            return 0
        self._running = True
        try:
            decision_now = self.clock.decision_now()
            attempted = 0
            for symbol in self.symbols:
                for timeframe in self.timeframes:
                    attempted += await self._ensure_window(symbol, timeframe, decision_now)
            self.runs_count += 1
            return attempted
        finally:
            self._running = False

    async def _ensure_window(self, symbol: str, timeframe: str, decision_now: int) -> int:
        step_ms = timeframe_to_ms(timeframe)
        to_ts = align_to_grid(decision_now, step_ms)
        from_ts = align_to_grid(max(0, to_ts - self.settings.sim_history_lookback_ms), step_ms)
        if to_ts <= from_ts:
            return 0

        cached = self.store.read_range(self.exchange, symbol, timeframe, from_ts, to_ts)
        missing = find_missing_ranges(cached, from_ts, to_ts, step_ms)
        for gap_range in missing:
            if not await self._fetch_range(symbol, timeframe, gap_range.start_ms, gap_range.end_ms, step_ms):
                break
        return len(missing)

    async def _fetch_range(self, symbol: str, timeframe: str, start_ms: int, end_ms: int, step_ms: int) -> bool:
        cursor = start_ms
        while cursor < end_ms:
            chunk_end = min(end_ms, cursor + MAX_BARS_PER_REQUEST * step_ms)
            try:
                await self.loader.load_candles(
                    symbol,
                    timeframe,
                    cursor,
                    chunk_end,
                    exchange=self.exchange,
                    max_bars=MAX_BARS_PER_REQUEST,
                    allow_large_range=True,
                )
            except Exception as e:
                logger.error(f"History fetch failed for {self.exchange}:{symbol}:{timeframe}: {e}")
                return False
            cursor = chunk_end
        return True
