"""
Intra-bar price interpolation for the candle feed.
"""

from candles import Candle
from rng import unit_float
from utils import clamp

ONE_MINUTE_MS = 60_000
NOISE_RANGE_FRACTION = 0.2
MIN_RANGE = 0.000001


def compute_deterministic_price(candle: Candle, sim_now: int, symbol: str, seed: str) -> float:
    """
    Price inside a one-minute bar at sim_now.

    Blends open -> close by elapsed fraction of the minute, adds seeded
    noise of up to +/-10% of the bar range, and clamps to [low, high].
    The same (seed, symbol, bar, sim_now) always gives the same price.
    """
    progress = clamp((sim_now - candle.ts) / ONE_MINUTE_MS, 0.0, 1.0)
    base = candle.open + (candle.close - candle.open) * progress
    price_range = max(MIN_RANGE, candle.high - candle.low)
    u = unit_float(f"{seed}:{symbol}:{candle.ts}:{sim_now}")
    noise = (u - 0.5) * price_range * NOISE_RANGE_FRACTION
    return clamp(base + noise, candle.low, candle.high)
