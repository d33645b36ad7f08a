"""
Cache-first candle loader tests.

Covers:
- Full cache hits never touch the provider
- Missing runs are fetched once and cached; a second call is network-free
- Provider failures become gaps with the matching reason
- "synthetic" fills through the seeded generator, "sim" through the presets
- Neither depends on unrelated cached data
- Range validation, alignment and truncation
"""

import asyncio
import unittest
from typing import List

import pytest
from sqlalchemy.orm import sessionmaker

from candle_loader import CandleLoader
from candle_store import CandleStore
from candles import CalibrationParams, Candle
from config import SimSettings
from database import init_db, make_engine
from errors import (
    GAP_MISSING_AFTER_RETRY,
    GAP_PROVIDER_BLOCKED,
    GAP_PROVIDER_ERROR,
    GAP_PROVIDER_RATE_LIMITED,
    ProviderBlocked,
    ProviderRateLimited,
    ValidationError,
)
from market_data import MarketDataSource, PresetSyntheticSource
from synthetic_market import build_market_seed, generate_synthetic_candles

HOUR = 3_600_000
MINUTE = 60_000


def _memory_store() -> CandleStore:
    engine = make_engine("sqlite://")
    init_db(engine)
    return CandleStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def _bar(ts, close=100.0):
    return Candle(ts=ts, open=close, high=close + 1, low=close - 1, close=close, volume=5.0)


class FakeSource(MarketDataSource):
    """Serves bars for every grid ts except those in `holes`; records calls."""

    name = "fake"

    def __init__(self, step_ms=HOUR, holes=(), error=None):
        self.step_ms = step_ms
        self.holes = set(holes)
        self.error = error
        self.calls = []

    async def fetch_candles(self, symbol, timeframe, start_ms, end_ms) -> List[Candle]:
        self.calls.append((start_ms, end_ms))
        if self.error is not None:
            raise self.error
        return [_bar(ts) for ts in range(start_ms, end_ms, self.step_ms) if ts not in self.holes]


def _loader(store, source=None, **settings):
    sources = {"fake": source} if source is not None else {}
    return CandleLoader(store, SimSettings(**settings), sources=sources)


# ============================================================================
# Real exchange path
# ============================================================================

class TestLoadCandlesFromProvider(unittest.TestCase):

    def setUp(self):
        self.store = _memory_store()

    def test_full_cache_hit_skips_provider(self):
        self.store.upsert("fake", "BTCUSDT", "1h", [_bar(ts) for ts in range(0, 5 * HOUR, HOUR)])
        source = FakeSource()
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", 0, 5 * HOUR, exchange="fake"))

        self.assertEqual(result.source, "cache")
        self.assertEqual(len(result.candles), 5)
        self.assertEqual(result.gaps, [])
        self.assertEqual(source.calls, [])

    def test_missing_runs_fetched_then_cached(self):
        self.store.upsert("fake", "BTCUSDT", "1h", [_bar(0), _bar(HOUR), _bar(4 * HOUR)])
        source = FakeSource()
        loader = _loader(self.store, source)

        result = asyncio.run(loader.load_candles("BTCUSDT", "1h", 0, 6 * HOUR, exchange="fake"))
        self.assertEqual(result.source, "cache+fake")
        self.assertEqual([c.ts for c in result.candles], [i * HOUR for i in range(6)])
        # Only the two holes were requested
        self.assertEqual(source.calls, [(2 * HOUR, 4 * HOUR), (5 * HOUR, 6 * HOUR)])

        again = asyncio.run(loader.load_candles("BTCUSDT", "1h", 0, 6 * HOUR, exchange="fake"))
        self.assertEqual(again.source, "cache")
        self.assertEqual(again.candles, result.candles)
        self.assertEqual(len(source.calls), 2)

    def test_provider_hole_reported_after_one_pass(self):
        source = FakeSource(holes={2 * HOUR})
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", 0, 4 * HOUR, exchange="fake"))

        self.assertEqual(len(result.candles), 3)
        self.assertEqual(len(result.gaps), 1)
        gap = result.gaps[0]
        self.assertEqual((gap.start_ms, gap.end_ms), (2 * HOUR, 3 * HOUR))
        self.assertEqual(gap.reason, GAP_MISSING_AFTER_RETRY)
        self.assertEqual(len(source.calls), 1)

    def test_blocked_provider_becomes_gap(self):
        source = FakeSource(error=ProviderBlocked("blocked", "fake", 451))
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", 0, 3 * HOUR, exchange="fake"))

        self.assertEqual(result.candles, [])
        self.assertEqual(len(result.gaps), 1)
        self.assertEqual(result.gaps[0].reason, GAP_PROVIDER_BLOCKED)
        self.assertEqual((result.gaps[0].start_ms, result.gaps[0].end_ms), (0, 3 * HOUR))

    def test_rate_limited_provider_becomes_gap(self):
        source = FakeSource(error=ProviderRateLimited("429", "fake", 429))
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", 0, HOUR, exchange="fake"))
        self.assertEqual(result.gaps[0].reason, GAP_PROVIDER_RATE_LIMITED)

    def test_unexpected_error_becomes_provider_error_gap(self):
        source = FakeSource(error=RuntimeError("boom"))
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", 0, HOUR, exchange="fake"))
        self.assertEqual(result.gaps[0].reason, GAP_PROVIDER_ERROR)

    def test_batches_respect_max_bars_per_request(self):
        source = FakeSource()
        asyncio.run(_loader(self.store, source).load_candles(
            "BTCUSDT", "1h", 0, 10 * HOUR, exchange="fake", max_bars_per_request=4
        ))
        self.assertEqual(source.calls, [(0, 4 * HOUR), (4 * HOUR, 8 * HOUR), (8 * HOUR, 10 * HOUR)])

    def test_range_is_floored_to_grid(self):
        source = FakeSource()
        result = asyncio.run(_loader(self.store, source).load_candles(
            "BTCUSDT", "1h", HOUR + 5, 3 * HOUR + 5, exchange="fake"
        ))
        self.assertEqual([c.ts for c in result.candles], [HOUR, 2 * HOUR])

    def test_truncates_to_max_bars(self):
        source = FakeSource()
        result = asyncio.run(_loader(self.store, source).load_candles(
            "BTCUSDT", "1h", 0, 100 * HOUR, exchange="fake", max_bars=10
        ))
        self.assertEqual(len(result.candles), 10)
        self.assertEqual(result.candles[-1].ts, 9 * HOUR)

    def test_empty_range(self):
        source = FakeSource()
        result = asyncio.run(_loader(self.store, source).load_candles("BTCUSDT", "1h", HOUR, HOUR, exchange="fake"))
        self.assertEqual(result.candles, [])
        self.assertEqual(result.gaps, [])
        self.assertEqual(source.calls, [])


# ============================================================================
# Validation
# ============================================================================

class TestLoadCandlesValidation:

    def test_inverted_range_raises(self):
        loader = _loader(_memory_store(), FakeSource())
        with pytest.raises(ValidationError):
            asyncio.run(loader.load_candles("BTCUSDT", "1h", 2 * HOUR, HOUR, exchange="fake"))

    def test_bad_timeframe_raises(self):
        loader = _loader(_memory_store(), FakeSource())
        with pytest.raises(ValidationError):
            asyncio.run(loader.load_candles("BTCUSDT", "2h", 0, HOUR, exchange="fake"))

    def test_non_finite_raises(self):
        loader = _loader(_memory_store(), FakeSource())
        with pytest.raises(ValidationError):
            asyncio.run(loader.load_candles("BTCUSDT", "1h", float("nan"), HOUR, exchange="fake"))

    def test_unknown_exchange_raises(self):
        loader = _loader(_memory_store())
        with pytest.raises(ValidationError):
            asyncio.run(loader.load_candles("BTCUSDT", "1h", 0, HOUR, exchange="nowhere"))

    def test_default_exchange(self):
        store = _memory_store()
        assert _loader(store).default_exchange() == "cryptocompare"
        assert _loader(store).default_exchange(prefer_synthetic=True) == "sim"
        assert _loader(store, market_data_mode="synthetic").default_exchange() == "sim"
        assert _loader(store).default_exchange("binance_spot") == "binance_spot"


# ============================================================================
# Synthetic path
# ============================================================================

class TestLoadSyntheticCandles:

    def test_synthetic_exchange_uses_generator(self):
        store = _memory_store()
        loader = _loader(store)
        result = asyncio.run(loader.load_candles("BTCUSDT", "1h", 0, 24 * HOUR, exchange="synthetic"))

        expected = generate_synthetic_candles(build_market_seed("BTCUSDT", "1h"), "BTCUSDT", "1h", 0, 24 * HOUR)
        assert result.source == "cache+synthetic"
        assert result.gaps == []
        assert result.candles == expected

    def test_synthetic_second_call_is_cache(self):
        store = _memory_store()
        loader = _loader(store)
        first = asyncio.run(loader.load_candles("ETHUSDT", "15m", 0, 4 * HOUR, exchange="sim"))
        second = asyncio.run(loader.load_candles("ETHUSDT", "15m", 0, 4 * HOUR, exchange="sim"))
        assert second.source == "cache"
        assert second.candles == first.candles

    def test_sim_exchange_uses_presets(self):
        store = _memory_store()
        result = asyncio.run(_loader(store).load_candles("ETHUSDT", "15m", 0, HOUR, exchange="sim"))
        expected = asyncio.run(PresetSyntheticSource().fetch_candles("ETHUSDT", "15m", 0, HOUR))
        assert result.source == "cache+sim"
        assert result.gaps == []
        assert result.candles == expected

    @pytest.mark.parametrize("exchange", ["synthetic", "sim"])
    def test_unrelated_cache_does_not_change_series(self, exchange):
        start, end = 1000 * HOUR, 1010 * HOUR
        cold = asyncio.run(_loader(_memory_store()).load_candles(
            "BTCUSDT", "1h", start, end, exchange=exchange, seed="fixed-seed"
        ))

        warm_store = _memory_store()
        warm_store.upsert("binance_spot", "BTCUSDT", "1h", [
            _bar(i * HOUR, close=20000.0 + (i % 7) * 150.0) for i in range(60)
        ])
        warm = asyncio.run(_loader(warm_store).load_candles(
            "BTCUSDT", "1h", start, end, exchange=exchange, seed="fixed-seed"
        ))

        assert [c.close for c in warm.candles] == [c.close for c in cold.candles]
        assert warm.candles == cold.candles

    def test_explicit_calibration_shapes_synthetic_series(self):
        calibration = CalibrationParams(drift_pct_per_day=0.0, vol_pct_per_day=2.0, step_clamp_pct=0.5)
        result = asyncio.run(_loader(_memory_store()).load_candles(
            "BTCUSDT", "1h", 0, 24 * HOUR, exchange="synthetic", seed="s", calibration=calibration
        ))
        expected = generate_synthetic_candles("s", "BTCUSDT", "1h", 0, 24 * HOUR, calibration=calibration)
        assert result.candles == expected

    def test_custom_seed_changes_series(self):
        store_a, store_b = _memory_store(), _memory_store()
        a = asyncio.run(_loader(store_a).load_candles("BTCUSDT", "1h", 0, 5 * HOUR, exchange="synthetic", seed="a"))
        b = asyncio.run(_loader(store_b).load_candles("BTCUSDT", "1h", 0, 5 * HOUR, exchange="synthetic", seed="b"))
        assert [c.close for c in a.candles] != [c.close for c in b.candles]


if __name__ == "__main__":
    unittest.main()
