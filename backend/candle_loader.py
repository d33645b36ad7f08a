"""
Cache-first candle loader with gap filling.

Flow for one request:
1. Validate and align the range to the timeframe grid
2. Read the cache and find minimal contiguous missing runs
3. Fetch each run from the provider in bounded batches and upsert
4. Re-read and report anything still missing as a Gap (no second pass)

The "synthetic" exchange never touches the network; its missing runs are
filled by the seeded generator, so a seed and range always give the same
bars. The "sim" exchange is served by the offline preset provider.

Usage:
    loader = CandleLoader(store, settings)
    result = await loader.load_candles("BTCUSDT", "1h", start_ms, end_ms, exchange="binance_spot")
    result.candles, result.gaps, result.source
"""

import logging
from typing import Dict, List, Optional, Tuple

from candle_store import CandleStore
from candles import (
    CalibrationParams,
    Candle,
    Gap,
    LoadCandlesResult,
    TimeRange,
    find_missing_ranges,
)
from config import SimSettings
from errors import GAP_MISSING_AFTER_RETRY, GAP_PROVIDER_ERROR, ProviderError, ValidationError
from market_data import MarketDataSource, build_source
from synthetic_market import SYNTHETIC_EXCHANGES, build_market_seed, ensure_candle_range
from utils import (
    align_to_grid,
    normalize_symbol,
    normalize_timeframe,
    require_finite_ms,
    timeframe_to_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BARS = 20000
DEFAULT_MAX_BARS_PER_REQUEST = 1000


class CandleLoader:
    """
    Loads candle ranges through the cache, filling holes from providers.

    Args:
        store: Candle cache
        settings: Runtime settings (default exchange choice, API keys)
        sources: Optional exchange -> provider overrides
    """

    def __init__(
        self,
        store: CandleStore,
        settings: Optional[SimSettings] = None,
        sources: Optional[Dict[str, MarketDataSource]] = None,
    ):
        self.store = store
        self.settings = settings or SimSettings()
        self._sources: Dict[str, MarketDataSource] = dict(sources or {})

    def default_exchange(self, exchange: Optional[str] = None, prefer_synthetic: bool = False) -> str:
        if exchange:
            return exchange
        if prefer_synthetic or self.settings.market_data_mode == "synthetic":
            return "sim"
        return "cryptocompare"

    def source_for(self, exchange: str) -> MarketDataSource:
        """
        Raises:
            ValidationError: If no provider exists for the exchange
        """
        source = self._sources.get(exchange)
        if source is None:
            try:
                source = build_source(exchange, self.settings.cryptocompare_api_key)
            except ValueError as e:
                raise ValidationError(str(e))
            self._sources[exchange] = source
        return source

    async def load_candles(
        self,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
        exchange: Optional[str] = None,
        data_source: Optional[MarketDataSource] = None,
        max_bars: int = DEFAULT_MAX_BARS,
        allow_large_range: bool = False,
        prefer_synthetic: bool = False,
        seed: Optional[str] = None,
        max_bars_per_request: int = DEFAULT_MAX_BARS_PER_REQUEST,
        calibration: Optional[CalibrationParams] = None,
    ) -> LoadCandlesResult:
        """
        Load [start_ms, end_ms) for one series.

        Args:
            symbol: Trading symbol, normalized before use
            timeframe: Timeframe or alias
            start_ms: Range start (floored to the grid)
            end_ms: Range end, exclusive (floored to the grid)
            exchange: Cache namespace and provider; see default_exchange
            data_source: Provider override for this call
            max_bars: Truncate the range to this many bars
            allow_large_range: Skip truncation
            prefer_synthetic: Default to the synthetic exchange
            seed: Seed for synthetic exchanges (defaults to the market seed)
            max_bars_per_request: Bars per provider call
            calibration: Drift/vol parameters for the synthetic exchange;
                only what is passed here shapes the series

        Returns:
            LoadCandlesResult with ascending candles, gaps and source tag

        Raises:
            ValidationError: On a bad timeframe, non-finite or inverted range
        """
        timeframe = normalize_timeframe(timeframe)
        symbol = normalize_symbol(symbol)
        if not symbol:
            raise ValidationError("Symbol is required")
        start_ms = require_finite_ms(start_ms, "start_ms")
        end_ms = require_finite_ms(end_ms, "end_ms")
        if start_ms > end_ms:
            raise ValidationError(f"Inverted range: start {start_ms} > end {end_ms}")

        exchange = self.default_exchange(exchange, prefer_synthetic)
        synthetic = exchange in SYNTHETIC_EXCHANGES
        source = None
        if not synthetic:
            source = data_source or self.source_for(exchange)

        step_ms = timeframe_to_ms(timeframe)
        aligned_start = align_to_grid(start_ms, step_ms)
        aligned_end = align_to_grid(end_ms, step_ms)

        if aligned_start >= aligned_end:
            return LoadCandlesResult(candles=[], gaps=[], source="cache")

        requested_bars = (aligned_end - aligned_start) // step_ms
        if requested_bars > max_bars and not allow_large_range:
            aligned_end = aligned_start + max_bars * step_ms
            logger.warning(
                f"Range truncated to {max_bars} bars for {exchange}:{symbol}:{timeframe} "
                f"(requested {requested_bars})"
            )

        cached = self.store.read_range(exchange, symbol, timeframe, aligned_start, aligned_end)
        missing = find_missing_ranges(cached, aligned_start, aligned_end, step_ms)
        if not missing:
            return LoadCandlesResult(candles=cached, gaps=[], source="cache")

        if synthetic:
            ensure_candle_range(
                self.store,
                seed or build_market_seed(symbol, timeframe),
                symbol,
                timeframe,
                aligned_start,
                aligned_end,
                exchange=exchange,
                calibration=calibration,
            )
            failures: List[Tuple[TimeRange, str]] = []
        else:
            failures = await self._fetch_missing(
                source, exchange, symbol, timeframe, missing, step_ms, max_bars_per_request
            )

        candles = self.store.read_range(exchange, symbol, timeframe, aligned_start, aligned_end)
        still_missing = find_missing_ranges(candles, aligned_start, aligned_end, step_ms)
        gaps = [
            Gap(start_ms=r.start_ms, end_ms=r.end_ms, reason=_reason_for(r, failures))
            for r in still_missing
        ]
        if gaps:
            logger.warning(
                f"{len(gaps)} gap(s) remain for {exchange}:{symbol}:{timeframe} "
                f"[{aligned_start}, {aligned_end})"
            )

        return LoadCandlesResult(candles=candles, gaps=gaps, source=f"cache+{exchange}")

    async def _fetch_missing(
        self,
        source: MarketDataSource,
        exchange: str,
        symbol: str,
        timeframe: str,
        missing: List[TimeRange],
        step_ms: int,
        max_bars_per_request: int,
    ) -> List[Tuple[TimeRange, str]]:
        """Fetch and store each missing run; return the runs that failed with a reason."""
        failures = []
        batch_ms = max(1, max_bars_per_request) * step_ms

        for run in missing:
            for batch_start in range(run.start_ms, run.end_ms, batch_ms):
                batch_end = min(batch_start + batch_ms, run.end_ms)
                try:
                    fetched = await source.fetch_candles(symbol, timeframe, batch_start, batch_end)
                except ProviderError as e:
                    logger.warning(
                        f"Provider {exchange} failed for {symbol} {timeframe} "
                        f"[{batch_start}, {batch_end}): {e}"
                    )
                    failures.append((run, e.gap_reason))
                    break
                except Exception as e:
                    logger.error(
                        f"Unexpected error fetching {symbol} {timeframe} "
                        f"[{batch_start}, {batch_end}) from {exchange}: {e}",
                        exc_info=True,
                    )
                    failures.append((run, GAP_PROVIDER_ERROR))
                    break

                usable = _in_range(fetched, batch_start, batch_end, step_ms)
                if usable:
                    self.store.upsert(exchange, symbol, timeframe, usable)

        return failures


def _in_range(candles: List[Candle], start_ms: int, end_ms: int, step_ms: int) -> List[Candle]:
    return [c for c in candles if start_ms <= c.ts < end_ms and c.ts % step_ms == 0]


def _reason_for(gap_range: TimeRange, failures: List[Tuple[TimeRange, str]]) -> str:
    for run, reason in failures:
        if run.start_ms <= gap_range.start_ms < run.end_ms:
            return reason
    return GAP_MISSING_AFTER_RETRY
