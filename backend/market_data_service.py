"""
Market data facade used by the HTTP layer.

Synthetic requests are generated per (user, strategy) seed and cached.
Real exchanges are served database-first:

- >= 80% of the requested bars cached: return them (source "db")
- partially cached: return what exists plus "missing_candles" gaps and
  schedule a background import (source "db_partial")
- nothing cached: quick import through the loader, bounded by
  QUICK_IMPORT_TIMEOUT_SECONDS, then fall back to the market-seeded
  synthetic series (source "synthetic"); when the exchange has enough
  cached history to calibrate, the parameters are folded into the seed

Ranges holding more than max_candles bars move up the 15m -> 1h -> 1d
ladder first; cached bars on the requested timeframe are rolled up when
the coarser timeframe is not cached yet.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Set

from candle_loader import CandleLoader
from candle_store import CandleStore
from candles import (
    Candle,
    LoadCandlesResult,
    aggregate_candles,
    build_gaps,
    downsample,
    find_missing_ranges,
    resolve_downsample_timeframe,
)
from config import DAY_MS, SimSettings
from errors import ValidationError
from synthetic_market import (
    build_calibrated_seed,
    build_market_seed,
    build_synthetic_seed,
    ensure_candle_range,
    generate_synthetic_candles,
)
from utils import normalize_symbol, normalize_timeframe, require_finite_ms, timeframe_to_ms

logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDLES = 5000
MAX_CANDLES_CAP = 10000
DEFAULT_MAX_RANGE_DAYS = 365
COVERAGE_THRESHOLD = 0.8
QUICK_IMPORT_DAYS = 7
GAP_MISSING_CANDLES = "missing_candles"

SYNTHETIC_EXCHANGE = "synthetic"
DEFAULT_REAL_EXCHANGE = "binance_spot"


@dataclass
class MarketDataRequest:
    symbol: str
    timeframe: str
    from_ts: int
    to_ts: int
    exchange: str = DEFAULT_REAL_EXCHANGE
    user_id: Optional[str] = None
    strategy_id: Optional[str] = None
    max_candles: Optional[int] = None
    max_range_days: Optional[int] = None


def clamp_range(from_ts: int, to_ts: int, max_range_days: int):
    """Keep the most recent max_range_days of the range."""
    max_range_ms = max_range_days * DAY_MS
    if to_ts - from_ts <= max_range_ms:
        return from_ts, to_ts
    return to_ts - max_range_ms, to_ts


class MarketDataService:
    """
    Args:
        store: Candle cache
        loader: Candle loader used for imports
        settings: Runtime settings (quick import timeout)
        calibration: Optional calibration provider for synthetic series
    """

    def __init__(
        self,
        store: CandleStore,
        loader: CandleLoader,
        settings: Optional[SimSettings] = None,
        calibration=None,
    ):
        self.store = store
        self.loader = loader
        self.settings = settings or SimSettings()
        self.calibration = calibration
        self._background: Set[asyncio.Task] = set()

    async def get_market_candles(self, request: MarketDataRequest) -> LoadCandlesResult:
        """
        Large ranges are served on a coarser timeframe (15m -> 1h -> 1d)
        until they fit max_candles; result.timeframe names the one used.

        Raises:
            ValidationError: On a bad timeframe or range, or a synthetic
                request without user_id and strategy_id
        """
        requested_timeframe = normalize_timeframe(request.timeframe)
        symbol = normalize_symbol(request.symbol)
        if not symbol:
            raise ValidationError("Symbol is required")
        from_ts = require_finite_ms(request.from_ts, "from_ts")
        to_ts = require_finite_ms(request.to_ts, "to_ts")
        if from_ts > to_ts:
            raise ValidationError(f"Inverted range: from {from_ts} > to {to_ts}")

        max_candles = min(request.max_candles or DEFAULT_MAX_CANDLES, MAX_CANDLES_CAP)
        from_ts, to_ts = clamp_range(from_ts, to_ts, request.max_range_days or DEFAULT_MAX_RANGE_DAYS)
        timeframe = resolve_downsample_timeframe(requested_timeframe, from_ts, to_ts, max_candles)
        if timeframe != requested_timeframe:
            logger.info(
                f"Serving {symbol} [{from_ts}, {to_ts}) on {timeframe} instead of "
                f"{requested_timeframe} to stay within {max_candles} candles"
            )

        result = await self._load(request, symbol, requested_timeframe, timeframe, from_ts, to_ts, max_candles)
        result.timeframe = timeframe
        return result

    async def _load(
        self,
        request: MarketDataRequest,
        symbol: str,
        requested_timeframe: str,
        timeframe: str,
        from_ts: int,
        to_ts: int,
        max_candles: int,
    ) -> LoadCandlesResult:
        step_ms = timeframe_to_ms(timeframe)
        requested_bars = math.ceil((to_ts - from_ts) / step_ms)

        if requested_bars <= 0:
            return LoadCandlesResult(candles=[], gaps=[], source="cache")

        exchange = request.exchange or DEFAULT_REAL_EXCHANGE
        if exchange == SYNTHETIC_EXCHANGE:
            return self._synthetic(request, symbol, timeframe, from_ts, to_ts, max_candles)

        cached = self._read_cached(exchange, symbol, requested_timeframe, timeframe, from_ts, to_ts, requested_bars)
        if len(cached) >= requested_bars * COVERAGE_THRESHOLD:
            return LoadCandlesResult(candles=downsample(cached, max_candles), gaps=[], source="db")

        if cached:
            self._schedule_import(exchange, symbol, timeframe, from_ts, to_ts)
            gaps = build_gaps(find_missing_ranges(cached, from_ts, to_ts, step_ms), GAP_MISSING_CANDLES)
            return LoadCandlesResult(candles=downsample(cached, max_candles), gaps=gaps, source="db_partial")

        imported = await self._quick_import(exchange, symbol, timeframe, from_ts, to_ts)
        if imported:
            return LoadCandlesResult(candles=downsample(imported, max_candles), gaps=[], source="db_partial")

        calibration = self._calibration_for(exchange, symbol, timeframe)
        candles = generate_synthetic_candles(
            build_calibrated_seed(build_market_seed(symbol, timeframe), calibration),
            symbol,
            timeframe,
            from_ts,
            to_ts,
            calibration=calibration,
        )
        return LoadCandlesResult(candles=downsample(candles, max_candles), gaps=[], source="synthetic")

    def _read_cached(
        self,
        exchange: str,
        symbol: str,
        requested_timeframe: str,
        timeframe: str,
        from_ts: int,
        to_ts: int,
        requested_bars: int,
    ) -> List[Candle]:
        """Cached bars on timeframe, rolled up from the requested timeframe when those cover more."""
        cached = self.store.read_range(exchange, symbol, timeframe, from_ts, to_ts)
        if timeframe == requested_timeframe or len(cached) >= requested_bars * COVERAGE_THRESHOLD:
            return cached

        fine = self.store.read_range(exchange, symbol, requested_timeframe, from_ts, to_ts)
        rolled = [c for c in aggregate_candles(fine, requested_timeframe, timeframe) if c.ts >= from_ts]
        return rolled if len(rolled) > len(cached) else cached

    def _synthetic(
        self,
        request: MarketDataRequest,
        symbol: str,
        timeframe: str,
        from_ts: int,
        to_ts: int,
        max_candles: int,
    ) -> LoadCandlesResult:
        if not request.user_id or not request.strategy_id:
            raise ValidationError("Synthetic candles require user_id and strategy_id")

        seed = build_synthetic_seed(request.user_id, request.strategy_id, symbol, timeframe)
        ensure_candle_range(self.store, seed, symbol, timeframe, from_ts, to_ts, exchange=SYNTHETIC_EXCHANGE)
        candles = self.store.read_range(SYNTHETIC_EXCHANGE, symbol, timeframe, from_ts, to_ts)
        return LoadCandlesResult(candles=downsample(candles, max_candles), gaps=[], source="cache+synthetic")

    async def _quick_import(
        self, exchange: str, symbol: str, timeframe: str, from_ts: int, to_ts: int
    ) -> List[Candle]:
        """Import the most recent days of the range within the timeout; [] on failure."""
        import_from = max(from_ts, to_ts - QUICK_IMPORT_DAYS * DAY_MS)
        timeout = self.settings.quick_import_timeout_seconds
        try:
            await asyncio.wait_for(
                self.loader.load_candles(symbol, timeframe, import_from, to_ts, exchange=exchange),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Quick import timed out after {timeout}s for {exchange}:{symbol}:{timeframe}, using synthetic fallback")
            return []
        except Exception as e:
            logger.warning(f"Quick import failed for {exchange}:{symbol}:{timeframe}, using synthetic fallback: {e}")
            return []
        return self.store.read_range(exchange, symbol, timeframe, from_ts, to_ts)

    def _schedule_import(self, exchange: str, symbol: str, timeframe: str, from_ts: int, to_ts: int):
        task = asyncio.create_task(self._background_import(exchange, symbol, timeframe, from_ts, to_ts))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_import(self, exchange: str, symbol: str, timeframe: str, from_ts: int, to_ts: int):
        try:
            result = await self.loader.load_candles(
                symbol, timeframe, from_ts, to_ts, exchange=exchange, allow_large_range=True
            )
            logger.info(
                f"Background import for {exchange}:{symbol}:{timeframe} done: "
                f"{len(result.candles)} candles, {len(result.gaps)} gaps"
            )
        except Exception as e:
            logger.warning(f"Background import failed for {exchange}:{symbol}:{timeframe}: {e}")

    def _calibration_for(self, exchange: str, symbol: str, timeframe: str):
        if self.calibration is None:
            return None
        try:
            return self.calibration.get(exchange, symbol, timeframe)
        except Exception as e:
            logger.warning(f"Calibration lookup failed for {exchange}:{symbol}:{timeframe}: {e}")
            return None

    async def close(self):
        for task in list(self._background):
            task.cancel()
        self._background.clear()
