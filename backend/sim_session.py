"""
Simulation session model and lifecycle.

    CREATED -> RUNNING -> (PAUSED <-> RUNNING) -> STOPPED | FINISHED | FAILED

Terminal states never transition further.
"""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from candles import Candle
from errors import InvalidSessionTransition


class SimSessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    FINISHED = "finished"
    FAILED = "failed"


class SimSessionMode(str, Enum):
    REPLAY = "replay"
    LAGGED_LIVE = "lagged_live"


TERMINAL_STATUSES = frozenset({
    SimSessionStatus.STOPPED,
    SimSessionStatus.FINISHED,
    SimSessionStatus.FAILED,
})

ALLOWED_TRANSITIONS = {
    SimSessionStatus.CREATED: {SimSessionStatus.RUNNING, SimSessionStatus.STOPPED, SimSessionStatus.FAILED},
    SimSessionStatus.RUNNING: {
        SimSessionStatus.PAUSED,
        SimSessionStatus.STOPPED,
        SimSessionStatus.FINISHED,
        SimSessionStatus.FAILED,
    },
    SimSessionStatus.PAUSED: {SimSessionStatus.RUNNING, SimSessionStatus.STOPPED, SimSessionStatus.FAILED},
}

# Event types
EVENT_STATUS = "status"
EVENT_CANDLE = "candle"


def is_terminal(status) -> bool:
    return SimSessionStatus(status) in TERMINAL_STATUSES


def transition(session_id: str, current, requested) -> SimSessionStatus:
    """
    Validate a lifecycle transition.

    Returns:
        The requested status

    Raises:
        InvalidSessionTransition: If the move is not allowed
    """
    current = SimSessionStatus(current)
    requested = SimSessionStatus(requested)
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidSessionTransition(session_id, current.value, requested.value)
    return requested


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class SimSession:
    id: str
    owner_id: str
    symbols: List[str]
    timeframe: str
    start_ms: int
    end_ms: Optional[int] = None
    speed: float = 1.0
    mode: SimSessionMode = SimSessionMode.REPLAY
    status: SimSessionStatus = SimSessionStatus.CREATED
    last_seq: int = 0
    cursor_ms: Optional[int] = None
    lag_ms: Optional[int] = None
    replay_ms_per_candle: Optional[int] = None
    error_message: Optional[str] = None
    strategy_id: Optional[str] = None
    exchange: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "strategyId": self.strategy_id,
            "symbols": list(self.symbols),
            "timeframe": self.timeframe,
            "exchange": self.exchange,
            "startMs": self.start_ms,
            "endMs": self.end_ms,
            "speed": self.speed,
            "mode": SimSessionMode(self.mode).value,
            "status": SimSessionStatus(self.status).value,
            "lastSeq": self.last_seq,
            "cursorMs": self.cursor_ms,
            "lagMs": self.lag_ms,
            "replayMsPerCandle": self.replay_ms_per_candle,
            "errorMessage": self.error_message,
        }


@dataclass(frozen=True)
class SimEvent:
    seq: int
    ts: int
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"seq": self.seq, "ts": self.ts, "type": self.type, "payload": self.payload}

    def payload_json(self) -> str:
        return json.dumps(self.payload)

    @property
    def is_terminal(self) -> bool:
        return self.type == EVENT_STATUS and self.payload.get("status") in {s.value for s in TERMINAL_STATUSES}


@dataclass(frozen=True)
class StrategyEvent:
    """Event produced by a strategy for one candle."""
    ts: int
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


class SessionStrategy(Protocol):
    """Hook a strategy executor implements to receive candles."""

    def on_candle(self, symbol: str, candle: Candle) -> List[StrategyEvent]:
        ...
