"""
Candle model and series helpers.

A Candle is one OHLCV bar whose ts is epoch milliseconds aligned to its
timeframe grid. Series are always ascending by ts with one bar per ts.
"""

import math
from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, NamedTuple, Optional

from errors import ValidationError
from utils import (
    align_to_grid,
    normalize_symbol,
    normalize_timeframe,
    timeframe_to_ms,
)


@dataclass(frozen=True)
class Candle:
    ts: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "Candle":
        return cls(
            ts=int(data["ts"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
        )


class SeriesKey(NamedTuple):
    """Identifies one cached time series."""
    exchange: str
    symbol: str
    timeframe: str

    @classmethod
    def of(cls, exchange: str, symbol: str, timeframe: str) -> "SeriesKey":
        return cls(exchange, normalize_symbol(symbol), normalize_timeframe(timeframe))


class TimeRange(NamedTuple):
    """Half-open range [start_ms, end_ms)."""
    start_ms: int
    end_ms: int

    @property
    def is_empty(self) -> bool:
        return self.start_ms >= self.end_ms


@dataclass(frozen=True)
class Gap:
    """A sub-range of a request for which no candle could be produced."""
    start_ms: int
    end_ms: int
    reason: str

    def to_dict(self) -> Dict:
        return {"startMs": self.start_ms, "endMs": self.end_ms, "reason": self.reason}


@dataclass
class LoadCandlesResult:
    candles: List[Candle] = field(default_factory=list)
    gaps: List[Gap] = field(default_factory=list)
    source: str = "cache"
    # Timeframe actually served when a large range was coarsened
    timeframe: Optional[str] = None

    def to_dict(self) -> Dict:
        data = {
            "candles": [c.to_dict() for c in self.candles],
            "gaps": [g.to_dict() for g in self.gaps],
            "source": self.source,
        }
        if self.timeframe is not None:
            data["timeframe"] = self.timeframe
        return data


@dataclass(frozen=True)
class CalibrationParams:
    drift_pct_per_day: float
    vol_pct_per_day: float
    step_clamp_pct: float


@dataclass(frozen=True)
class QuoteUpdate:
    symbol: str
    ts: int
    price: float

    def to_dict(self) -> Dict:
        return asdict(self)


def validate_candle(candle: Candle) -> List[str]:
    """
    Check candle invariants.

    Returns:
        List of violation messages (empty when the candle is valid)
    """
    errors = []
    values = (candle.open, candle.high, candle.low, candle.close, candle.volume)
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
        return [f"Non-finite value in candle at {candle.ts}"]

    if min(candle.open, candle.high, candle.low, candle.close) <= 0:
        errors.append(f"Non-positive price at {candle.ts}")
    if candle.high < max(candle.open, candle.close):
        errors.append(f"High {candle.high} below open/close at {candle.ts}")
    if candle.low > min(candle.open, candle.close):
        errors.append(f"Low {candle.low} above open/close at {candle.ts}")
    if candle.volume <= 0:
        errors.append(f"Non-positive volume at {candle.ts}")
    return errors


def find_missing_ranges(candles: Iterable[Candle], start_ms: int, end_ms: int, step_ms: int) -> List[TimeRange]:
    """
    Scan the grid [start_ms, end_ms) and return minimal contiguous runs of
    ticks that have no candle.
    """
    present = {c.ts for c in candles}
    missing: List[TimeRange] = []
    run_start: Optional[int] = None

    for ts in range(start_ms, end_ms, step_ms):
        if ts in present:
            if run_start is not None:
                missing.append(TimeRange(run_start, ts))
                run_start = None
        elif run_start is None:
            run_start = ts

    if run_start is not None:
        missing.append(TimeRange(run_start, end_ms))
    return missing


def build_gaps(missing: Iterable[TimeRange], reason: str) -> List[Gap]:
    return [Gap(start_ms=r.start_ms, end_ms=r.end_ms, reason=reason) for r in missing]


def dedupe_and_sort(candles: Iterable[Candle]) -> List[Candle]:
    """Sort ascending by ts, keeping the last occurrence of each ts."""
    by_ts: Dict[int, Candle] = {}
    for candle in candles:
        by_ts[candle.ts] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]


def aggregate_candles(candles: List[Candle], from_timeframe: str, to_timeframe: str) -> List[Candle]:
    """
    Roll candles up into a coarser timeframe.

    Buckets are aligned to the target grid; each bucket opens with its first
    bar, closes with its last and sums volume.

    Raises:
        ValidationError: If the target is finer than the source
    """
    from_ms = timeframe_to_ms(from_timeframe)
    to_ms = timeframe_to_ms(to_timeframe)
    if to_ms < from_ms:
        raise ValidationError(f"Cannot aggregate {from_timeframe} into finer {to_timeframe}")
    if to_ms == from_ms:
        return list(candles)

    result: List[Candle] = []
    bucket: List[Candle] = []
    bucket_ts: Optional[int] = None

    for candle in candles:
        ts = align_to_grid(candle.ts, to_ms)
        if bucket_ts is not None and ts != bucket_ts:
            result.append(_merge(bucket_ts, bucket))
            bucket = []
        bucket_ts = ts
        bucket.append(candle)

    if bucket:
        result.append(_merge(bucket_ts, bucket))
    return result


def _merge(ts: int, bucket: List[Candle]) -> Candle:
    return Candle(
        ts=ts,
        open=bucket[0].open,
        high=max(c.high for c in bucket),
        low=min(c.low for c in bucket),
        close=bucket[-1].close,
        volume=sum(c.volume for c in bucket),
    )


# Coarsening ladder used when a range holds too many bars to return
DOWNSAMPLE_LADDER = {"15m": "1h", "1h": "1d"}


def resolve_downsample_timeframe(timeframe: str, start_ms: int, end_ms: int, max_bars: int) -> str:
    """
    Walk the 15m -> 1h -> 1d ladder until the range fits in max_bars.

    Timeframes outside the ladder are returned unchanged.
    """
    current = normalize_timeframe(timeframe)
    while current in DOWNSAMPLE_LADDER:
        bars = math.ceil((end_ms - start_ms) / timeframe_to_ms(current))
        if bars <= max_bars:
            break
        current = DOWNSAMPLE_LADDER[current]
    return current


def downsample(candles: List[Candle], target_bars: int) -> List[Candle]:
    """
    Reduce a series to at most target_bars by merging fixed-size strides.

    Each output bar keeps the ts of its first input bar.
    """
    if target_bars <= 0 or len(candles) <= target_bars:
        return list(candles)

    stride = math.ceil(len(candles) / target_bars)
    return [
        _merge(candles[i].ts, candles[i:i + stride])
        for i in range(0, len(candles), stride)
    ]
