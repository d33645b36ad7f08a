"""
Calibration of synthetic series from cached real data.

StoreCalibrationProvider estimates per-day drift and volatility of log
returns over a trailing window of cached candles. CachedCalibrationProvider
fronts any provider with a short-TTL in-memory cache (misses included) so
the generator does not hit the database on every request.
"""

import logging
import math
import statistics
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from candle_store import CandleStore
from candles import CalibrationParams, SeriesKey
from utils import normalize_symbol, normalize_timeframe, timeframe_to_ms

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000
MIN_RETURNS = 30
DEFAULT_WINDOW_DAYS = 30
DEFAULT_CLAMP_SIGMAS = 4.0
DEFAULT_TTL_SECONDS = 600.0


class CalibrationProvider(Protocol):
    def get(self, exchange: str, symbol: str, timeframe: str) -> Optional[CalibrationParams]:
        ...


class StoreCalibrationProvider:
    """
    Drift/vol estimates from the candle cache.

    Args:
        store: Candle cache to read from
        window_days: Trailing window ending at the latest cached bar
        clamp_sigmas: Per-bar step clamp expressed in standard deviations
    """

    def __init__(
        self,
        store: CandleStore,
        window_days: int = DEFAULT_WINDOW_DAYS,
        clamp_sigmas: float = DEFAULT_CLAMP_SIGMAS,
    ):
        self.store = store
        self.window_days = window_days
        self.clamp_sigmas = clamp_sigmas

    def get(self, exchange: str, symbol: str, timeframe: str) -> Optional[CalibrationParams]:
        symbol = normalize_symbol(symbol)
        timeframe = normalize_timeframe(timeframe)
        step_ms = timeframe_to_ms(timeframe)

        latest = self.store.get_latest_candle(symbol, exchange=exchange, timeframe=timeframe)
        if latest is None:
            return None

        end_ms = latest.ts + step_ms
        start_ms = end_ms - self.window_days * DAY_MS
        candles = self.store.read_range(exchange, symbol, timeframe, start_ms, end_ms)

        returns = []
        for prev, cur in zip(candles, candles[1:]):
            # Only adjacent bars; a hole in the cache is not a return
            if cur.ts - prev.ts != step_ms or prev.close <= 0 or cur.close <= 0:
                continue
            returns.append(math.log(cur.close / prev.close))

        if len(returns) < MIN_RETURNS:
            logger.debug(f"Not enough returns to calibrate {exchange}:{symbol}:{timeframe} ({len(returns)})")
            return None

        bars_per_day = DAY_MS / step_ms
        mean = statistics.fmean(returns)
        stdev = statistics.stdev(returns)

        return CalibrationParams(
            drift_pct_per_day=mean * bars_per_day * 100,
            vol_pct_per_day=stdev * math.sqrt(bars_per_day) * 100,
            step_clamp_pct=stdev * self.clamp_sigmas * 100,
        )


class CachedCalibrationProvider:
    """
    TTL cache in front of a calibration provider.

    Args:
        inner: Provider to delegate to on a miss
        ttl_seconds: Entry lifetime (default 10 minutes)
        monotonic: Time source in seconds
    """

    def __init__(
        self,
        inner: CalibrationProvider,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.ttl_seconds = ttl_seconds
        self._monotonic = monotonic
        self._entries: Dict[SeriesKey, Tuple[float, Optional[CalibrationParams]]] = {}
        self._lock = threading.Lock()

    def get(self, exchange: str, symbol: str, timeframe: str) -> Optional[CalibrationParams]:
        key = SeriesKey.of(exchange, symbol, timeframe)
        now = self._monotonic()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                return entry[1]

        value = self.inner.get(key.exchange, key.symbol, key.timeframe)

        with self._lock:
            self._entries[key] = (now, value)
        return value

    def invalidate(self, key: Optional[SeriesKey] = None):
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
