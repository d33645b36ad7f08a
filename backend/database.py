"""
Database models and setup for SQLite.

Candle timestamps are stored as integer epoch milliseconds (BigInteger) so
that grid arithmetic never passes through datetime conversion.
"""

import json
import os
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./market_sim.db")


def make_engine(url: str = DATABASE_URL):
    """
    Create an engine for the given URL.

    In-memory SQLite shares one connection across threads so every session
    sees the same database.
    """
    if url.startswith("sqlite"):
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


# Create engine
engine = make_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class MarketCandle(Base):
    """
    One cached OHLCV bar.

    Unique per (exchange, symbol, timeframe, ts); writes are upserts where
    the last write wins.
    """
    __tablename__ = "market_candles"
    __table_args__ = (
        UniqueConstraint("exchange", "symbol", "timeframe", "ts", name="uq_market_candles_series_ts"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exchange = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    timeframe = Column(String, nullable=False)
    ts = Column(BigInteger, nullable=False, index=True)  # epoch ms, grid-aligned
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class MarketLiveQuote(Base):
    """Latest simulated quote per symbol (global session only)."""
    __tablename__ = "market_live_quotes"

    symbol = Column(String, primary_key=True)
    ts = Column(BigInteger, nullable=False)
    price = Column(Float, nullable=False)
    source = Column(String, default="sim")
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class SimSessionRecord(Base):
    """Persisted state of one simulation session."""
    __tablename__ = "sim_sessions"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=True)
    symbols = Column(Text, nullable=False)  # JSON list
    timeframe = Column(String, nullable=False)
    exchange = Column(String, nullable=True)
    start_ms = Column(BigInteger, nullable=False)
    end_ms = Column(BigInteger, nullable=True)
    speed = Column(Float, default=1.0)
    mode = Column(String, nullable=False)  # "replay" or "lagged_live"
    status = Column(String, nullable=False, index=True)
    last_seq = Column(Integer, default=0)
    cursor_ms = Column(BigInteger, nullable=True)
    lag_ms = Column(BigInteger, nullable=True)
    replay_ms_per_candle = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def get_symbols(self):
        return json.loads(self.symbols) if self.symbols else []


class SimEventRecord(Base):
    """Append-only session event. seq is contiguous per session."""
    __tablename__ = "sim_events"
    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_sim_events_session_seq"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    ts = Column(BigInteger, nullable=False)
    type = Column(String, nullable=False)
    payload = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=_utcnow)


# Create tables
def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)

