"""
Preset "sim" provider tests.

Covers:
- Every preset is deterministic across calls and valid as OHLCV
- Range alignment and exclusive end
- Presets produce distinct paths; unknown symbols use the BTCUSDT preset
- Pattern shapes (squeeze volatility, dips below the path)
"""

import asyncio

import pytest

from candles import validate_candle
from market_data.presets import (
    PRESETS,
    PresetSyntheticSource,
    build_preset_candle,
    get_preset,
    preset_price_at,
    xorshift32,
)

MINUTE = 60_000
HOUR = 3_600_000
START = 1_700_000_000_000 // HOUR * HOUR


def _fetch(symbol, timeframe="15m", start=START, end=START + 6 * HOUR):
    return asyncio.run(PresetSyntheticSource().fetch_candles(symbol, timeframe, start, end))


class TestPresetSource:

    @pytest.mark.parametrize("symbol", sorted(PRESETS))
    def test_deterministic_and_valid(self, symbol):
        first = _fetch(symbol)
        second = _fetch(symbol)
        assert first == second
        assert len(first) == 24
        for candle in first:
            assert validate_candle(candle) == []

    @pytest.mark.parametrize("symbol", sorted(PRESETS))
    def test_prices_near_preset_base(self, symbol):
        # The trend term grows with the bucket index, so check near the epoch
        preset = PRESETS[symbol]
        closes = [c.close for c in _fetch(symbol, "1m", 0, 6 * HOUR)]
        assert all(0.5 * preset.base < close < 2.0 * preset.base for close in closes)

    def test_sub_range_matches_full_range(self):
        full = _fetch("ETHUSDT", "1m", START, START + 120 * MINUTE)
        part = _fetch("ETHUSDT", "1m", START + 30 * MINUTE, START + 60 * MINUTE)
        assert part == full[30:60]

    def test_alignment_and_exclusive_end(self):
        candles = _fetch("BTCUSDT", "1h", START + 5, START + 3 * HOUR + 5)
        assert [c.ts for c in candles] == [START, START + HOUR, START + 2 * HOUR]
        assert _fetch("BTCUSDT", "1h", START, START) == []

    def test_symbol_is_normalized(self):
        assert _fetch("btc/usdt") == _fetch("BTCUSDT")

    def test_unknown_symbol_uses_default_preset(self):
        assert get_preset("NOPEUSDT") is PRESETS["BTCUSDT"]
        # Same path as BTCUSDT up to the per-symbol noise
        for ts in range(START, START + 2 * HOUR, MINUTE):
            assert abs(preset_price_at("NOPEUSDT", ts) - preset_price_at("BTCUSDT", ts)) <= PRESETS["BTCUSDT"].noise_amp

    def test_presets_differ(self):
        paths = {symbol: tuple(c.close for c in _fetch(symbol)) for symbol in PRESETS}
        assert len(set(paths.values())) == len(PRESETS)

    def test_open_and_close_follow_path(self):
        candle = build_preset_candle("SOLUSDT", START, HOUR)
        assert candle.open == preset_price_at("SOLUSDT", START)
        assert candle.close == preset_price_at("SOLUSDT", START + HOUR)


class TestPresetPatterns:

    def test_squeeze_phase_is_quieter(self):
        preset = PRESETS["BTCUSDT"]
        # Buckets 0..359 of each 720-bucket period are the squeeze
        squeeze = [preset_price_at("BTCUSDT", b * MINUTE) for b in range(0, 300)]
        breakout = [preset_price_at("BTCUSDT", b * MINUTE) for b in range(400, 700)]
        squeeze_noise = max(abs(b - a) for a, b in zip(squeeze, squeeze[1:]))
        breakout_noise = max(abs(b - a) for a, b in zip(breakout, breakout[1:]))
        assert squeeze_noise < breakout_noise
        assert max(breakout) > max(squeeze) + preset.breakout_amp / 2

    def test_deep_dip_window(self):
        # ADAUSDT dips during the first 60 buckets of every 520
        inside = preset_price_at("ADAUSDT", 30 * MINUTE)
        outside = preset_price_at("ADAUSDT", 200 * MINUTE)
        assert inside < outside - 0.05


class TestXorshift:

    def test_stream_is_repeatable(self):
        a, b = xorshift32(12345), xorshift32(12345)
        assert [a() for _ in range(10)] == [b() for _ in range(10)]

    def test_zero_seed_is_usable(self):
        draw = xorshift32(0)
        values = [draw() for _ in range(100)]
        assert all(0 <= v < 1 for v in values)
        assert len(set(values)) > 90
