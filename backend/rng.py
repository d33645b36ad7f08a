"""
Deterministic 32-bit hashing and pseudo-random streams.

Everything here is integer arithmetic modulo 2**32 so that a given seed
string produces the same numbers on every platform and every run.
"""

import math
from typing import Optional

MASK32 = 0xFFFFFFFF
UINT32_RANGE = 4294967296  # 2**32

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619


def _imul(a: int, b: int) -> int:
    return (a * b) & MASK32


def hash_string32(text: str) -> int:
    """
    FNV-1a 32-bit hash over the UTF-16 code units of text.

    Returns:
        Unsigned 32-bit integer
    """
    h = FNV_OFFSET_BASIS
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = _imul(h, FNV_PRIME)
    return h


class Mulberry32:
    """Mulberry32 generator: uniform floats in [0, 1)."""

    def __init__(self, seed: int):
        self._state = seed & MASK32

    def next(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & MASK32
        return ((t ^ (t >> 14)) & MASK32) / UINT32_RANGE


class SeededRng(Mulberry32):
    """
    Mulberry32 stream with a standard-normal draw.

    normal() uses Box-Muller and keeps the second variate as a spare, so
    two consecutive normal() calls consume one pair of uniforms.
    """

    def __init__(self, seed: int):
        super().__init__(seed)
        self._spare: Optional[float] = None

    def normal(self) -> float:
        if self._spare is not None:
            value = self._spare
            self._spare = None
            return value

        u = 0.0
        v = 0.0
        while u == 0.0:
            u = self.next()
        while v == 0.0:
            v = self.next()
        mag = math.sqrt(-2.0 * math.log(u))
        self._spare = mag * math.sin(2.0 * math.pi * v)
        return mag * math.cos(2.0 * math.pi * v)


def random_for(seed: str, ts: int, salt: str) -> float:
    """One uniform in [0, 1) for a (seed, ts, salt) triple."""
    return Mulberry32(hash_string32(f"{seed}:{ts}:{salt}")).next()


def unit_float(key: str) -> float:
    """Map a string to [0, 1) through its 32-bit hash."""
    return hash_string32(key) / UINT32_RANGE
