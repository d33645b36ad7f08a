"""
Replay clock: maps wall-clock time onto a virtual simulation timeline.

    sim_now      = sim_start + (wall_now - real_start) * speed
    decision_now = sim_now - lag

decision_now is deliberately stale so consumers never observe data from
their own simulated future. The start point is resolved once per process:
explicit SIM_START_TS, else the latest cached candle minus the lookback
(not before the earliest cached candle), else wall time minus the lookback.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from config import SimSettings
from utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_MS = 7 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class ReplayClockState:
    sim_start_ms: int
    real_start_ms: int
    speed: float
    lag_ms: int
    initialized: bool = True

    def to_dict(self):
        return {
            "simStartMs": self.sim_start_ms,
            "realStartMs": self.real_start_ms,
            "speed": self.speed,
            "lagMs": self.lag_ms,
            "initialized": self.initialized,
        }


class ReplayClock:
    """
    Process-wide virtual clock, initialized exactly once.

    Args:
        settings: Speed, lag, explicit start and enable flag
        bounds_provider: Returns (min_ts, max_ts) of cached candles or None
        wall_time_ms: Wall clock source (epoch ms)
    """

    def __init__(
        self,
        settings: SimSettings,
        bounds_provider: Optional[Callable[[], Optional[Tuple[int, int]]]] = None,
        wall_time_ms: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self._bounds_provider = bounds_provider
        self._wall_time_ms = wall_time_ms
        self._lookback_ms = settings.sim_lookback_ms or DEFAULT_LOOKBACK_MS
        self._state: Optional[ReplayClockState] = None
        self._lock = threading.Lock()

    @property
    def is_enabled(self) -> bool:
        return self.settings.sim_enabled

    @property
    def is_initialized(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> ReplayClockState:
        """Initialized clock state (initializes on first access)."""
        return self.ensure_initialized()

    def ensure_initialized(self) -> ReplayClockState:
        """
        Resolve the start point once. Concurrent first calls all return the
        same state; later calls are no-ops.
        """
        state = self._state
        if state is not None:
            return state

        with self._lock:
            if self._state is None:
                self._state = self._build_state()
                logger.info(
                    f"Replay clock initialized: sim_start={self._state.sim_start_ms} "
                    f"speed={self._state.speed} lag={self._state.lag_ms}ms "
                    f"enabled={self.is_enabled}"
                )
            return self._state

    def _build_state(self) -> ReplayClockState:
        wall_now = self._wall_time_ms()
        start = self._resolve_start(wall_now)
        return ReplayClockState(
            sim_start_ms=max(0, int(start)),
            real_start_ms=wall_now,
            speed=self.settings.sim_speed,
            lag_ms=self.settings.sim_lag_ms,
        )

    def _resolve_start(self, wall_now: int) -> int:
        if self.settings.sim_start_ts is not None:
            return self.settings.sim_start_ts

        fallback = wall_now - self._lookback_ms
        if self._bounds_provider is None:
            return fallback

        try:
            bounds = self._bounds_provider()
        except Exception as e:
            logger.warning(f"Failed to read candle bounds, using wall-clock fallback: {e}")
            return fallback

        if not bounds or bounds[1] is None:
            return fallback

        min_ts, max_ts = bounds
        start = max_ts - self._lookback_ms
        if min_ts is not None and start < min_ts:
            start = min_ts
        return start

    def sim_now(self) -> int:
        """Current simulated time in epoch ms (wall time when disabled)."""
        if not self.is_enabled:
            return self._wall_time_ms()
        state = self.ensure_initialized()
        elapsed = self._wall_time_ms() - state.real_start_ms
        return int(state.sim_start_ms + elapsed * state.speed)

    def decision_now(self, lag_override_ms: Optional[int] = None) -> int:
        """
        Simulated time minus the decision lag.

        When simulation is disabled this is plain wall time and the lag is
        ignored.
        """
        if not self.is_enabled:
            return self._wall_time_ms()
        lag = self.state.lag_ms if lag_override_ms is None else lag_override_ms
        return self.sim_now() - lag

    def to_dict(self):
        state = self.ensure_initialized()
        return {
            "enabled": self.is_enabled,
            "simNow": self.sim_now(),
            "decisionNow": self.decision_now(),
            **state.to_dict(),
        }
