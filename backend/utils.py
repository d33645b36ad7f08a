"""
Utility functions for time handling and grid alignment.
Timestamps are integer epoch milliseconds everywhere inside the core;
datetimes only appear at API boundaries and must be UTC timezone-aware.
"""

from datetime import datetime, timezone
import math
import re
import time

from errors import ValidationError

VALID_TIMEFRAMES = ("1m", "5m", "15m", "1h", "1d")

TIMEFRAME_MS = {
    "1m": 60_000,
    "5m": 300_000,
    "15m": 900_000,
    "1h": 3_600_000,
    "1d": 86_400_000,
}

_TIMEFRAME_ALIASES = {
    "1m": "1m",
    "1min": "1m",
    "5m": "5m",
    "5min": "5m",
    "15m": "15m",
    "15min": "15m",
    "1h": "1h",
    "1hr": "1h",
    "60m": "1h",
    "1d": "1d",
    "1day": "1d",
    "d": "1d",
}

_SYMBOL_SEPARATORS = re.compile(r"[/\-_]")


def normalize_symbol(symbol: str) -> str:
    """Uppercase a symbol and strip pair separators ("btc/usdt" -> "BTCUSDT")."""
    return _SYMBOL_SEPARATORS.sub("", symbol or "").upper()


def normalize_timeframe(timeframe: str) -> str:
    """
    Map a timeframe alias to its canonical form.

    Raises:
        ValidationError: If the timeframe is unknown
    """
    normalized = _TIMEFRAME_ALIASES.get(str(timeframe).lower().strip())
    if normalized is None:
        raise ValidationError(
            f"Invalid timeframe: {timeframe}. Valid values: {', '.join(VALID_TIMEFRAMES)}"
        )
    return normalized


def timeframe_to_ms(timeframe: str) -> int:
    """Duration of one bar in milliseconds. Accepts aliases."""
    return TIMEFRAME_MS[normalize_timeframe(timeframe)]


def align_to_grid(ts: int, step_ms: int) -> int:
    """Round a timestamp down to the nearest multiple of step_ms."""
    return (int(ts) // step_ms) * step_ms


def align_end_exclusive(ts: int, step_ms: int) -> int:
    """
    Align an exclusive end bound.

    A bound exactly on the grid stays put; anything past a grid point rounds
    up, so [T, T+step+1) covers the bars at T and T+step.
    """
    return ((int(ts) - 1) // step_ms) * step_ms + step_ms


def require_finite_ms(value, name: str) -> int:
    """
    Validate a millisecond timestamp.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"{name} must be finite, got {value!r}")
    return int(value)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def ensure_utc_datetime(dt: datetime, context: str = "") -> datetime:
    """
    Ensure a datetime is UTC timezone-aware.

    Raises:
        ValueError: If datetime is None or naive
    """
    if dt is None:
        raise ValueError(f"None datetime provided in context: {context}")

    if dt.tzinfo is None:
        raise ValueError(
            f"Naive datetime detected in context: {context}. "
            f"All timestamps must be timezone-aware UTC. Got: {dt}"
        )

    if dt.tzinfo != timezone.utc:
        dt = dt.astimezone(timezone.utc)

    return dt


def ms_to_utc_datetime(ts_ms: int) -> datetime:
    """Convert epoch milliseconds to a UTC timezone-aware datetime."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def utc_datetime_to_ms(dt: datetime) -> int:
    """Convert a UTC timezone-aware datetime to epoch milliseconds."""
    dt = ensure_utc_datetime(dt, "utc_datetime_to_ms")
    return int(round(dt.timestamp() * 1000))
