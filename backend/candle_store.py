"""
Candle cache store.

Thin persistence layer over the market_candles and market_live_quotes
tables. Upserts are idempotent and commutative: concurrent writers for the
same (exchange, symbol, timeframe, ts) converge on the last write.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from candles import Candle, QuoteUpdate, dedupe_and_sort
from database import MarketCandle, MarketLiveQuote, SessionLocal
from utils import normalize_symbol, normalize_timeframe

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 500


def _insert_for(db: Session, table):
    """Dialect-native INSERT that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def _row_to_candle(row: MarketCandle) -> Candle:
    return Candle(
        ts=int(row.ts),
        open=row.open,
        high=row.high,
        low=row.low,
        close=row.close,
        volume=row.volume,
    )


class CandleStore:
    """
    Cache-first storage for OHLCV series.

    Args:
        session_factory: Callable returning a SQLAlchemy Session
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def upsert(self, exchange: str, symbol: str, timeframe: str, candles: Iterable[Candle]) -> int:
        """
        Insert or overwrite candles keyed by ts.

        Duplicates within one call collapse to the last occurrence.

        Returns:
            Number of distinct candles written
        """
        symbol = normalize_symbol(symbol)
        timeframe = normalize_timeframe(timeframe)
        deduped = dedupe_and_sort(candles)
        if not deduped:
            return 0

        db = self._session_factory()
        try:
            table = MarketCandle.__table__
            for i in range(0, len(deduped), UPSERT_BATCH_SIZE):
                batch = deduped[i:i + UPSERT_BATCH_SIZE]
                values = [
                    {
                        "exchange": exchange,
                        "symbol": symbol,
                        "timeframe": timeframe,
                        "ts": c.ts,
                        "open": c.open,
                        "high": c.high,
                        "low": c.low,
                        "close": c.close,
                        "volume": c.volume,
                    }
                    for c in batch
                ]
                stmt = _insert_for(db, table).values(values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["exchange", "symbol", "timeframe", "ts"],
                    set_={
                        "open": stmt.excluded.open,
                        "high": stmt.excluded.high,
                        "low": stmt.excluded.low,
                        "close": stmt.excluded.close,
                        "volume": stmt.excluded.volume,
                        "updated_at": datetime.now(timezone.utc),
                    },
                )
                db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.debug(f"Upserted {len(deduped)} candles for {exchange}:{symbol}:{timeframe}")
        return len(deduped)

    def read_range(
        self,
        exchange: str,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
    ) -> List[Candle]:
        """Read cached candles in [start_ms, end_ms), ascending by ts."""
        symbol = normalize_symbol(symbol)
        timeframe = normalize_timeframe(timeframe)
        if start_ms >= end_ms:
            return []

        db = self._session_factory()
        try:
            rows = db.execute(
                select(MarketCandle)
                .where(
                    MarketCandle.exchange == exchange,
                    MarketCandle.symbol == symbol,
                    MarketCandle.timeframe == timeframe,
                    MarketCandle.ts >= start_ms,
                    MarketCandle.ts < end_ms,
                )
                .order_by(MarketCandle.ts.asc())
            ).scalars().all()
            return [_row_to_candle(row) for row in rows]
        finally:
            db.close()

    def get_bounds(self, exchange: Optional[str] = None) -> Optional[Tuple[int, int]]:
        """
        Earliest and latest cached candle ts.

        Returns:
            (min_ts, max_ts), or None when the cache is empty
        """
        db = self._session_factory()
        try:
            stmt = select(func.min(MarketCandle.ts), func.max(MarketCandle.ts))
            if exchange:
                stmt = stmt.where(MarketCandle.exchange == exchange)
            min_ts, max_ts = db.execute(stmt).one()
            if min_ts is None or max_ts is None:
                return None
            return int(min_ts), int(max_ts)
        finally:
            db.close()

    def get_latest_candle(
        self,
        symbol: str,
        exchange: Optional[str] = None,
        timeframe: Optional[str] = None,
    ) -> Optional[Candle]:
        """Most recent cached candle for a symbol across exchanges unless one is given."""
        db = self._session_factory()
        try:
            stmt = select(MarketCandle).where(MarketCandle.symbol == normalize_symbol(symbol))
            if exchange:
                stmt = stmt.where(MarketCandle.exchange == exchange)
            if timeframe:
                stmt = stmt.where(MarketCandle.timeframe == normalize_timeframe(timeframe))
            row = db.execute(stmt.order_by(MarketCandle.ts.desc()).limit(1)).scalars().first()
            return _row_to_candle(row) if row else None
        finally:
            db.close()

    def upsert_live_quotes(self, quotes: Iterable[QuoteUpdate], source: str = "sim") -> int:
        """Store the latest quote per symbol."""
        latest = {}
        for quote in quotes:
            latest[normalize_symbol(quote.symbol)] = quote
        if not latest:
            return 0

        db = self._session_factory()
        try:
            stmt = _insert_for(db, MarketLiveQuote.__table__).values([
                {"symbol": symbol, "ts": q.ts, "price": q.price, "source": source}
                for symbol, q in latest.items()
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=["symbol"],
                set_={
                    "ts": stmt.excluded.ts,
                    "price": stmt.excluded.price,
                    "source": stmt.excluded.source,
                    "updated_at": datetime.now(timezone.utc),
                },
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return len(latest)

    def get_live_quotes(self) -> List[QuoteUpdate]:
        db = self._session_factory()
        try:
            rows = db.execute(
                select(MarketLiveQuote).order_by(MarketLiveQuote.symbol.asc())
            ).scalars().all()
            return [QuoteUpdate(symbol=r.symbol, ts=int(r.ts), price=r.price) for r in rows]
        finally:
            db.close()
