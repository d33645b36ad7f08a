"""
Deterministic synthetic candle generator.

A series is a pure function of (seed, symbol, timeframe, range, limits):
every bar derives its randomness from hashing (seed, ts, purpose) so the
same request always yields the same candles, and different purposes
(price change, wicks, volume) never share a stream.

Usage:
    seed = build_synthetic_seed("user-1", "strategy-7", "BTC/USDT", "15m")
    candles = generate_synthetic_candles(seed, "BTCUSDT", "15m", start_ms, end_ms)

    # Incremental, cache-backed variant that continues an existing path:
    ensure_candle_range(store, seed, "BTCUSDT", "15m", start_ms, end_ms)
"""

import logging
import math
from typing import Dict, List, Optional

from candles import CalibrationParams, Candle, find_missing_ranges
from rng import MASK32, hash_string32, random_for
from utils import (
    align_end_exclusive,
    align_to_grid,
    clamp,
    normalize_symbol,
    normalize_timeframe,
    timeframe_to_ms,
)

logger = logging.getLogger(__name__)

MAX_STEP_CHANGE_PCT = 0.05
MAX_WICK_PCT = 0.02
MIN_PRICE = 0.0001
BASE_PRICE_MIN = 50.0
BASE_PRICE_MAX = 50000.0
ANCHOR_JITTER = 0.2  # +/-10% around the base price
VOLUME_SCALE = 8.0

SYNTHETIC_EXCHANGES = ("synthetic",)

DAY_MS = 86_400_000


def build_synthetic_seed(user_id: str, strategy_id: str, symbol: str, timeframe: str) -> str:
    return f"{user_id}:{strategy_id}:{normalize_symbol(symbol)}:{normalize_timeframe(timeframe)}"


def build_market_seed(symbol: str, timeframe: str) -> str:
    """Seed used when no user/strategy scope exists."""
    return f"market:{normalize_symbol(symbol)}:{normalize_timeframe(timeframe)}"


def build_calibrated_seed(seed: str, calibration: Optional[CalibrationParams]) -> str:
    """Seed that also names the calibration the series is generated with."""
    if calibration is None:
        return seed
    return (
        f"{seed}:cal:{calibration.drift_pct_per_day!r}:"
        f"{calibration.vol_pct_per_day!r}:{calibration.step_clamp_pct!r}"
    )


def base_price_for_seed(seed: str, symbol: str, timeframe: str) -> float:
    ratio = hash_string32(f"{seed}:{symbol}:{timeframe}:base") / MASK32
    return BASE_PRICE_MIN + ratio * (BASE_PRICE_MAX - BASE_PRICE_MIN)


def initial_price(seed: str, symbol: str, timeframe: str, ts: int) -> float:
    """Deterministic anchor close for a path starting at ts."""
    base = base_price_for_seed(seed, symbol, timeframe)
    jitter = (random_for(seed, ts, "anchor") - 0.5) * ANCHOR_JITTER
    return max(MIN_PRICE, base * (1 + jitter))


def _step_change(
    seed: str,
    ts: int,
    max_step_change_pct: float,
    calibration: Optional[CalibrationParams],
    step_ms: int,
) -> float:
    if calibration is None:
        raw = (random_for(seed, ts, "change") * 2 - 1) * max_step_change_pct
        return clamp(raw, -max_step_change_pct, max_step_change_pct)

    bar_fraction = step_ms / DAY_MS
    mean = calibration.drift_pct_per_day / 100 * bar_fraction
    stdev = calibration.vol_pct_per_day / 100 * math.sqrt(bar_fraction)

    # Box-Muller from two independent salted uniforms
    u = max(random_for(seed, ts, "normalU"), 1e-12)
    v = random_for(seed, ts, "normalV")
    z = math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)

    bound = max_step_change_pct
    if calibration.step_clamp_pct > 0:
        bound = min(bound, calibration.step_clamp_pct / 100)
    return clamp(mean + stdev * z, -bound, bound)


def build_candle(
    seed: str,
    ts: int,
    prev_close: float,
    max_step_change_pct: float = MAX_STEP_CHANGE_PCT,
    max_wick_pct: float = MAX_WICK_PCT,
    calibration: Optional[CalibrationParams] = None,
    step_ms: int = 60_000,
) -> Candle:
    """Build the bar at ts opening at prev_close."""
    change = _step_change(seed, ts, max_step_change_pct, calibration, step_ms)
    open_ = prev_close
    close = max(MIN_PRICE, open_ * (1 + change))

    wick_up = random_for(seed, ts, "wickUp") * max_wick_pct
    wick_down = random_for(seed, ts, "wickDown") * max_wick_pct
    high = max(open_, close) * (1 + wick_up)
    low = max(MIN_PRICE, min(open_, close) * (1 - wick_down))

    volume_base = 100 + random_for(seed, ts, "volume") * 900
    volume = max(1.0, volume_base * (1 + abs(change) * VOLUME_SCALE))

    return Candle(ts=ts, open=open_, high=high, low=low, close=close, volume=volume)


def generate_synthetic_candles(
    seed: str,
    symbol: str,
    timeframe: str,
    from_ts: int,
    to_ts: int,
    max_step_change_pct: Optional[float] = None,
    max_wick_pct: Optional[float] = None,
    calibration: Optional[CalibrationParams] = None,
    prev_close: Optional[float] = None,
) -> List[Candle]:
    """
    Generate a continuous synthetic series over [from_ts, to_ts).

    from_ts is floored to the grid; to_ts is an exclusive bound, so a
    to_ts one millisecond past a grid point includes that grid point.

    Args:
        seed: Stable seed string (see build_synthetic_seed)
        symbol: Trading symbol, normalized before use
        timeframe: Timeframe or alias
        from_ts: Inclusive start (epoch ms)
        to_ts: Exclusive end (epoch ms)
        max_step_change_pct: Max |close/open - 1| per bar (default 0.05)
        max_wick_pct: Max wick size as a fraction (default 0.02)
        calibration: Optional drift/vol parameters for a Normal step
        prev_close: Close to continue from instead of the seed anchor

    Returns:
        Candles ascending by ts
    """
    symbol = normalize_symbol(symbol)
    timeframe = normalize_timeframe(timeframe)
    step_ms = timeframe_to_ms(timeframe)
    max_step = MAX_STEP_CHANGE_PCT if max_step_change_pct is None else max_step_change_pct
    max_wick = MAX_WICK_PCT if max_wick_pct is None else max_wick_pct
    aligned_start = align_to_grid(from_ts, step_ms)
    aligned_end = align_end_exclusive(to_ts, step_ms)

    close = prev_close if prev_close is not None else initial_price(seed, symbol, timeframe, aligned_start)
    candles = []
    for ts in range(aligned_start, aligned_end, step_ms):
        candle = build_candle(seed, ts, close, max_step, max_wick, calibration, step_ms)
        candles.append(candle)
        close = candle.close
    return candles


def ensure_candle_range(
    store,
    seed: str,
    symbol: str,
    timeframe: str,
    from_ts: int,
    to_ts: int,
    exchange: str = "synthetic",
    max_step_change_pct: Optional[float] = None,
    max_wick_pct: Optional[float] = None,
    calibration: Optional[CalibrationParams] = None,
) -> int:
    """
    Fill missing synthetic bars in the cache for [from_ts, to_ts).

    Each missing run continues from the cached bar just before it, so an
    incrementally extended series is identical to one generated in a single
    pass. A run with no predecessor starts from the seed's anchor price.

    Returns:
        Number of candles written
    """
    symbol = normalize_symbol(symbol)
    timeframe = normalize_timeframe(timeframe)
    step_ms = timeframe_to_ms(timeframe)
    max_step = MAX_STEP_CHANGE_PCT if max_step_change_pct is None else max_step_change_pct
    max_wick = MAX_WICK_PCT if max_wick_pct is None else max_wick_pct
    aligned_start = align_to_grid(from_ts, step_ms)
    aligned_end = align_end_exclusive(to_ts, step_ms)

    if aligned_start >= aligned_end:
        return 0

    existing = store.read_range(exchange, symbol, timeframe, aligned_start, aligned_end)
    missing = find_missing_ranges(existing, aligned_start, aligned_end, step_ms)
    if not missing:
        return 0

    known = store.read_range(exchange, symbol, timeframe, aligned_start - step_ms, aligned_end)
    close_by_ts: Dict[int, float] = {c.ts: c.close for c in known}

    written = 0
    for run in missing:
        prev = close_by_ts.get(run.start_ms - step_ms)
        if prev is None:
            prev = initial_price(seed, symbol, timeframe, run.start_ms)

        candles = []
        for ts in range(run.start_ms, run.end_ms, step_ms):
            candle = build_candle(seed, ts, prev, max_step, max_wick, calibration, step_ms)
            candles.append(candle)
            prev = candle.close
            close_by_ts[ts] = candle.close

        if candles:
            store.upsert(exchange, symbol, timeframe, candles)
            written += len(candles)

    logger.debug(
        f"Synthetic fill {exchange}:{symbol}:{timeframe} "
        f"[{aligned_start}, {aligned_end}) wrote {written} candles in {len(missing)} runs"
    )
    return written
