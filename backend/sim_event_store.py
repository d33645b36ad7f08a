"""
Persistence for simulation sessions and their event logs.
"""

import json
import logging
from typing import Callable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import SessionLocal, SimEventRecord, SimSessionRecord
from errors import Forbidden, SessionNotFound
from sim_session import SimEvent, SimSession, SimSessionMode, SimSessionStatus

logger = logging.getLogger(__name__)

DEFAULT_EVENTS_LIMIT = 1000

_UPDATABLE_FIELDS = {
    "status",
    "last_seq",
    "cursor_ms",
    "error_message",
    "end_ms",
    "speed",
    "lag_ms",
    "replay_ms_per_candle",
}


def _record_to_session(record: SimSessionRecord) -> SimSession:
    return SimSession(
        id=record.id,
        owner_id=record.owner_id,
        strategy_id=record.strategy_id,
        symbols=record.get_symbols(),
        timeframe=record.timeframe,
        exchange=record.exchange,
        start_ms=int(record.start_ms),
        end_ms=int(record.end_ms) if record.end_ms is not None else None,
        speed=record.speed or 1.0,
        mode=SimSessionMode(record.mode),
        status=SimSessionStatus(record.status),
        last_seq=record.last_seq or 0,
        cursor_ms=int(record.cursor_ms) if record.cursor_ms is not None else None,
        lag_ms=int(record.lag_ms) if record.lag_ms is not None else None,
        replay_ms_per_candle=record.replay_ms_per_candle,
        error_message=record.error_message,
    )


class SimEventStore:
    """
    Sessions and append-only events.

    Args:
        session_factory: Callable returning a SQLAlchemy Session
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def create_session(self, session: SimSession) -> SimSession:
        db = self._session_factory()
        try:
            db.add(SimSessionRecord(
                id=session.id,
                owner_id=session.owner_id,
                strategy_id=session.strategy_id,
                symbols=json.dumps(list(session.symbols)),
                timeframe=session.timeframe,
                exchange=session.exchange,
                start_ms=session.start_ms,
                end_ms=session.end_ms,
                speed=session.speed,
                mode=SimSessionMode(session.mode).value,
                status=SimSessionStatus(session.status).value,
                last_seq=session.last_seq,
                cursor_ms=session.cursor_ms,
                lag_ms=session.lag_ms,
                replay_ms_per_candle=session.replay_ms_per_candle,
                error_message=session.error_message,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(f"Simulation session created: {session.id} ({', '.join(session.symbols)} {session.timeframe})")
        return session

    def get_session(self, session_id: str, owner_id: Optional[str] = None) -> SimSession:
        """
        Raises:
            SessionNotFound: If no such session exists
            Forbidden: If owner_id is given and does not own the session
        """
        db = self._session_factory()
        try:
            record = db.get(SimSessionRecord, session_id)
            if record is None:
                raise SessionNotFound(session_id)
            if owner_id is not None and record.owner_id != owner_id:
                raise Forbidden(session_id)
            return _record_to_session(record)
        finally:
            db.close()

    def list_sessions(self, owner_id: Optional[str] = None) -> List[SimSession]:
        db = self._session_factory()
        try:
            stmt = select(SimSessionRecord).order_by(SimSessionRecord.created_at.desc())
            if owner_id is not None:
                stmt = stmt.where(SimSessionRecord.owner_id == owner_id)
            return [_record_to_session(r) for r in db.execute(stmt).scalars().all()]
        finally:
            db.close()

    def update_session(self, session_id: str, **fields) -> SimSession:
        """
        Update mutable session fields.

        Raises:
            SessionNotFound: If no such session exists
            ValueError: On an unknown field
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        db = self._session_factory()
        try:
            record = db.get(SimSessionRecord, session_id)
            if record is None:
                raise SessionNotFound(session_id)
            for name, value in fields.items():
                if isinstance(value, (SimSessionStatus, SimSessionMode)):
                    value = value.value
                setattr(record, name, value)
            db.commit()
            db.refresh(record)
            return _record_to_session(record)
        except SessionNotFound:
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def append_event(self, session_id: str, event: SimEvent):
        db = self._session_factory()
        try:
            db.add(SimEventRecord(
                session_id=session_id,
                seq=event.seq,
                ts=event.ts,
                type=event.type,
                payload=event.payload_json(),
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_events(self, session_id: str, from_seq: int = 0, limit: int = DEFAULT_EVENTS_LIMIT) -> List[SimEvent]:
        """Events with seq > from_seq, ascending."""
        db = self._session_factory()
        try:
            rows = db.execute(
                select(SimEventRecord)
                .where(SimEventRecord.session_id == session_id, SimEventRecord.seq > from_seq)
                .order_by(SimEventRecord.seq.asc())
                .limit(limit)
            ).scalars().all()
            return [
                SimEvent(seq=r.seq, ts=int(r.ts), type=r.type, payload=json.loads(r.payload) if r.payload else {})
                for r in rows
            ]
        finally:
            db.close()

    def get_last_seq(self, session_id: str) -> int:
        db = self._session_factory()
        try:
            value = db.execute(
                select(func.max(SimEventRecord.seq)).where(SimEventRecord.session_id == session_id)
            ).scalar()
            return int(value or 0)
        finally:
            db.close()
