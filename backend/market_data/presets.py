"""
Offline "sim" exchange: per-symbol regime presets.

Each preset shapes a price path as base + linear trend + slow sine cycle,
plus a pattern component (squeeze then breakout, mean reversion, pullbacks,
volatility bursts, ...) and bounded noise. Prices are a pure function of
(symbol, ts): noise comes from an xorshift32 stream seeded by hashing the
symbol and its one-minute bucket, so any range fetches identically no
matter what is cached.

Unknown symbols use the BTCUSDT preset.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from candles import Candle
from market_data.base import MarketDataSource
from rng import MASK32, hash_string32
from utils import align_to_grid, normalize_symbol, normalize_timeframe, timeframe_to_ms

BASE_BUCKET_MS = 60_000
MIN_PRICE = 0.0001
HIGH_LOW_SAMPLES = 4


@dataclass(frozen=True)
class SymbolPreset:
    base: float
    trend_per_bucket: float
    cycle_period: float
    cycle_amp: float
    noise_amp: float
    pattern: str
    volume_base: float
    volume_scale: float
    volume_noise: float
    breakout_period: Optional[int] = None
    squeeze_bars: Optional[int] = None
    breakout_amp: Optional[float] = None
    burst_period: Optional[int] = None
    burst_bars: Optional[int] = None
    burst_multiplier: Optional[float] = None
    pullback_period: Optional[float] = None
    pullback_amp: Optional[float] = None
    range_period: Optional[float] = None
    range_amp: Optional[float] = None
    momentum_period: Optional[float] = None
    momentum_amp: Optional[float] = None
    dip_period: Optional[int] = None
    dip_bars: Optional[int] = None
    dip_amp: Optional[float] = None


PRESETS: Dict[str, SymbolPreset] = {
    "BTCUSDT": SymbolPreset(
        base=67000, trend_per_bucket=0.35, cycle_period=1440, cycle_amp=900, noise_amp=220,
        pattern="squeeze_breakout", breakout_period=720, squeeze_bars=360, breakout_amp=2800,
        volume_base=1200, volume_scale=55, volume_noise=220,
    ),
    "ETHUSDT": SymbolPreset(
        base=3400, trend_per_bucket=0.08, cycle_period=960, cycle_amp=120, noise_amp=45,
        pattern="mean_revert", range_period=320, range_amp=95,
        volume_base=700, volume_scale=40, volume_noise=120,
    ),
    "BNBUSDT": SymbolPreset(
        base=450, trend_per_bucket=0.03, cycle_period=1100, cycle_amp=18, noise_amp=10,
        pattern="trend_pullback", pullback_period=240, pullback_amp=14,
        volume_base=240, volume_scale=18, volume_noise=60,
    ),
    "SOLUSDT": SymbolPreset(
        base=165, trend_per_bucket=0.05, cycle_period=700, cycle_amp=20, noise_amp=16,
        pattern="vol_burst", burst_period=180, burst_bars=20, burst_multiplier=2.8,
        volume_base=420, volume_scale=30, volume_noise=140,
    ),
    "XRPUSDT": SymbolPreset(
        base=0.62, trend_per_bucket=0.00002, cycle_period=880, cycle_amp=0.035, noise_amp=0.01,
        pattern="range", range_period=220, range_amp=0.06,
        volume_base=900, volume_scale=18, volume_noise=120,
    ),
    "DOGEUSDT": SymbolPreset(
        base=0.17, trend_per_bucket=0.00008, cycle_period=420, cycle_amp=0.018, noise_amp=0.012,
        pattern="fast_momentum", momentum_period=60, momentum_amp=0.035,
        volume_base=600, volume_scale=26, volume_noise=180,
    ),
    "ADAUSDT": SymbolPreset(
        base=0.52, trend_per_bucket=0.00003, cycle_period=900, cycle_amp=0.03, noise_amp=0.012,
        pattern="deep_dips", dip_period=520, dip_bars=60, dip_amp=0.12,
        volume_base=500, volume_scale=22, volume_noise=140,
    ),
    "TRXUSDT": SymbolPreset(
        base=0.11, trend_per_bucket=0.00001, cycle_period=1200, cycle_amp=0.004, noise_amp=0.0025,
        pattern="low_vol",
        volume_base=350, volume_scale=10, volume_noise=40,
    ),
}

DEFAULT_PRESET = "BTCUSDT"


def xorshift32(seed: int) -> Callable[[], float]:
    """Uniform draws in [0, 1) at a resolution of one millionth."""
    state = (seed & MASK32) or 1

    def draw() -> float:
        nonlocal state
        state ^= (state << 13) & MASK32
        state ^= state >> 17
        state ^= (state << 5) & MASK32
        return (state % 1_000_000) / 1_000_000

    return draw


def get_preset(symbol: str) -> SymbolPreset:
    return PRESETS.get(normalize_symbol(symbol), PRESETS[DEFAULT_PRESET])


def _pattern(preset: SymbolPreset, bucket: int) -> Tuple[float, float]:
    """(price offset, noise multiplier) of the preset's pattern at a bucket."""
    pattern = preset.pattern

    if pattern == "squeeze_breakout":
        period = preset.breakout_period or 720
        squeeze_bars = preset.squeeze_bars if preset.squeeze_bars is not None else period // 2
        amp = preset.breakout_amp if preset.breakout_amp is not None else preset.cycle_amp * 2
        phase = bucket % period
        squeeze = 0.25 if phase < squeeze_bars else 1.0
        impulse_phase = max(0, phase - squeeze_bars) / max(1, period - squeeze_bars)
        return math.sin(min(math.pi, impulse_phase * math.pi)) * amp, squeeze

    if pattern == "mean_revert":
        period = preset.range_period or 320
        amp = preset.range_amp if preset.range_amp is not None else preset.cycle_amp * 0.8
        return math.sin(bucket / period) * amp, 0.8

    if pattern == "trend_pullback":
        period = preset.pullback_period or 240
        amp = preset.pullback_amp if preset.pullback_amp is not None else preset.cycle_amp * 0.9
        return -abs(math.sin(bucket / period)) * amp, 1.0

    if pattern == "vol_burst":
        period = preset.burst_period or 180
        bars = preset.burst_bars if preset.burst_bars is not None else 20
        multiplier = preset.burst_multiplier if preset.burst_multiplier is not None else 2.5
        return 0.0, multiplier if bucket % period < bars else 1.0

    if pattern == "range":
        period = preset.range_period or 240
        amp = preset.range_amp if preset.range_amp is not None else preset.cycle_amp
        return math.sin(bucket / period) * amp, 0.6

    if pattern == "fast_momentum":
        period = preset.momentum_period or 60
        amp = preset.momentum_amp if preset.momentum_amp is not None else preset.cycle_amp * 1.2
        return math.sin(bucket / period) * amp, 1.4

    if pattern == "deep_dips":
        period = preset.dip_period or 520
        bars = preset.dip_bars or 60
        amp = preset.dip_amp if preset.dip_amp is not None else preset.cycle_amp * 2
        phase = bucket % period
        depth = math.sin(phase / bars * math.pi) if phase < bars else 0.0
        return -depth * amp, 1.2

    # low_vol
    return 0.0, 0.35


def preset_price_at(symbol: str, ts: float) -> float:
    preset = get_preset(symbol)
    bucket = math.floor(ts / BASE_BUCKET_MS)
    base = (
        preset.base
        + preset.trend_per_bucket * bucket
        + math.sin(bucket / preset.cycle_period) * preset.cycle_amp
    )
    offset, noise_multiplier = _pattern(preset, bucket)
    rand = xorshift32(hash_string32(f"{symbol}:{bucket}"))()
    noise = (rand - 0.5) * preset.noise_amp * noise_multiplier
    return max(MIN_PRICE, base + offset + noise)


def build_preset_candle(symbol: str, ts: int, step_ms: int) -> Candle:
    """Bar at ts: open/close from the path, high/low from intra-bar samples."""
    preset = get_preset(symbol)
    open_ = preset_price_at(symbol, ts)
    close = preset_price_at(symbol, ts + step_ms)
    bucket = math.floor(ts / BASE_BUCKET_MS)

    draw = xorshift32(hash_string32(f"{symbol}:{bucket}:samples"))
    samples = [preset_price_at(symbol, ts + draw() * step_ms) for _ in range(HIGH_LOW_SAMPLES)]
    wiggle = abs((draw() - 0.5) * preset.noise_amp * 0.25)
    high = max(open_, close, *samples) + wiggle
    low = max(MIN_PRICE, min(open_, close, *samples) - wiggle)

    volume_noise = (xorshift32(hash_string32(f"{symbol}:{bucket}:volume"))() - 0.5) * preset.volume_noise
    volume = max(0.0, preset.volume_base + abs(close - open_) * preset.volume_scale + volume_noise)

    return Candle(ts=ts, open=open_, high=high, low=low, close=close, volume=volume)


class PresetSyntheticSource(MarketDataSource):
    """Provider for the "sim" exchange. Never touches the network."""

    name = "sim"

    async def fetch_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> List[Candle]:
        symbol = normalize_symbol(symbol)
        step_ms = timeframe_to_ms(normalize_timeframe(timeframe))
        aligned_start = align_to_grid(start_ms, step_ms)
        aligned_end = align_to_grid(end_ms, step_ms)
        return [build_preset_candle(symbol, ts, step_ms) for ts in range(aligned_start, aligned_end, step_ms)]
