"""
Candle cache store tests.

Covers:
- Upsert idempotence and last-write-wins
- Half-open range reads
- Bounds, latest candle and live quote persistence
"""

import unittest

from sqlalchemy.orm import sessionmaker

from candle_store import CandleStore
from candles import Candle, QuoteUpdate
from database import init_db, make_engine

MINUTE = 60_000


def _memory_store() -> CandleStore:
    engine = make_engine("sqlite://")
    init_db(engine)
    return CandleStore(sessionmaker(autocommit=False, autoflush=False, bind=engine))


def _bar(ts, close=100.0):
    return Candle(ts=ts, open=close, high=close + 1, low=close - 1, close=close, volume=5.0)


class TestCandleStore(unittest.TestCase):

    def setUp(self):
        self.store = _memory_store()

    def test_upsert_and_read_range(self):
        written = self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(ts) for ts in range(0, 5 * MINUTE, MINUTE)])
        self.assertEqual(written, 5)

        candles = self.store.read_range("binance_spot", "BTCUSDT", "1m", MINUTE, 3 * MINUTE)
        self.assertEqual([c.ts for c in candles], [MINUTE, 2 * MINUTE])

    def test_upsert_is_idempotent(self):
        bars = [_bar(ts) for ts in range(0, 3 * MINUTE, MINUTE)]
        self.store.upsert("binance_spot", "BTCUSDT", "1m", bars)
        self.store.upsert("binance_spot", "BTCUSDT", "1m", bars)

        candles = self.store.read_range("binance_spot", "BTCUSDT", "1m", 0, 3 * MINUTE)
        self.assertEqual(len(candles), 3)

    def test_upsert_last_write_wins(self):
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0, 100.0)])
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0, 120.0)])

        candles = self.store.read_range("binance_spot", "BTCUSDT", "1m", 0, MINUTE)
        self.assertEqual(candles[0].close, 120.0)

    def test_duplicates_in_one_call_collapse(self):
        written = self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0, 1.0), _bar(0, 2.0)])
        self.assertEqual(written, 1)
        self.assertEqual(self.store.read_range("binance_spot", "BTCUSDT", "1m", 0, MINUTE)[0].close, 2.0)

    def test_series_are_isolated(self):
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0)])
        self.store.upsert("cryptocompare", "BTCUSDT", "1m", [_bar(MINUTE)])
        self.store.upsert("binance_spot", "BTCUSDT", "5m", [_bar(0)])

        candles = self.store.read_range("binance_spot", "BTCUSDT", "1m", 0, 10 * MINUTE)
        self.assertEqual([c.ts for c in candles], [0])

    def test_symbol_normalized_on_write_and_read(self):
        self.store.upsert("binance_spot", "btc/usdt", "1min", [_bar(0)])
        self.assertEqual(len(self.store.read_range("binance_spot", "BTCUSDT", "1m", 0, MINUTE)), 1)

    def test_empty_range_reads_nothing(self):
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0)])
        self.assertEqual(self.store.read_range("binance_spot", "BTCUSDT", "1m", MINUTE, MINUTE), [])

    def test_bounds(self):
        self.assertIsNone(self.store.get_bounds())
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(MINUTE), _bar(9 * MINUTE)])
        self.store.upsert("synthetic", "ETHUSDT", "1m", [_bar(20 * MINUTE)])
        self.assertEqual(self.store.get_bounds(), (MINUTE, 20 * MINUTE))
        self.assertEqual(self.store.get_bounds("binance_spot"), (MINUTE, 9 * MINUTE))

    def test_latest_candle(self):
        self.store.upsert("binance_spot", "BTCUSDT", "1m", [_bar(0), _bar(MINUTE, 101.0)])
        latest = self.store.get_latest_candle("BTCUSDT")
        self.assertEqual(latest.ts, MINUTE)
        self.assertEqual(latest.close, 101.0)
        self.assertIsNone(self.store.get_latest_candle("ETHUSDT"))

    def test_live_quotes_keep_latest_per_symbol(self):
        self.store.upsert_live_quotes([
            QuoteUpdate(symbol="BTCUSDT", ts=1, price=10.0),
            QuoteUpdate(symbol="BTCUSDT", ts=2, price=11.0),
            QuoteUpdate(symbol="ETHUSDT", ts=2, price=5.0),
        ])
        self.store.upsert_live_quotes([QuoteUpdate(symbol="ETHUSDT", ts=3, price=6.0)])

        quotes = {q.symbol: q for q in self.store.get_live_quotes()}
        self.assertEqual(quotes["BTCUSDT"].price, 11.0)
        self.assertEqual(quotes["ETHUSDT"].ts, 3)


if __name__ == "__main__":
    unittest.main()
