"""
Yahoo Finance historical market data provider.
Fetches daily OHLCV candles for equities and ETFs.

Note: Only daily candles are supported because Yahoo Finance has limitations
on intraday data availability and reliability. yfinance is synchronous, so
the download runs in a worker thread.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import List

import pandas as pd
import yfinance as yf

from candles import Candle
from errors import ProviderClientError, ProviderTransient
from market_data.base import MarketDataSource
from utils import ms_to_utc_datetime, normalize_timeframe, utc_datetime_to_ms

logger = logging.getLogger(__name__)


def fetch_yahoo_candles(symbol: str, start_ms: int, end_ms: int) -> List[Candle]:
    """
    Fetch daily candles from Yahoo Finance.

    Args:
        symbol: Trading symbol (e.g., "AAPL", "SPY")
        start_ms: Inclusive start (epoch ms)
        end_ms: Exclusive end (epoch ms)

    Returns:
        Daily candles with ts at 00:00 UTC of the trading date

    Raises:
        ProviderTransient: If the download itself fails
        ProviderClientError: If the returned data is invalid
    """
    start_dt = ms_to_utc_datetime(start_ms)
    # yfinance end is exclusive on dates; go one day past to keep the last session
    end_dt = ms_to_utc_datetime(end_ms) + timedelta(days=1)

    logger.info(f"[YAHOO FINANCE] Fetching DAILY candles for {symbol} {start_dt.date()} -> {end_dt.date()}")

    try:
        df = yf.Ticker(symbol).history(
            start=start_dt,
            end=end_dt,
            interval="1d",
            auto_adjust=False,
            prepost=False,
        )
    except Exception as e:
        raise ProviderTransient(f"Yahoo Finance download failed for {symbol}: {e}", "yahoo")

    if df is None or df.empty:
        logger.warning(f"[YAHOO FINANCE] No DAILY data returned for {symbol}")
        return []

    candles = [c for c in normalize_yahoo_candles(df, symbol) if start_ms <= c.ts < end_ms]
    validate_candles(candles, symbol)

    logger.info(f"[YAHOO FINANCE] Fetched {len(candles)} daily candles for {symbol}")
    return candles


def normalize_yahoo_candles(df: pd.DataFrame, symbol: str) -> List[Candle]:
    """
    Normalize a Yahoo Finance DataFrame to candles.

    Each row is keyed by its trading date at 00:00 UTC so it lands on the
    1d grid regardless of the exchange timezone yfinance reports.

    Args:
        df: Yahoo Finance DataFrame with OHLCV columns and a DatetimeIndex
        symbol: Trading symbol (for error messages)
    """
    candles = []

    for idx, row in df.iterrows():
        if not isinstance(idx, pd.Timestamp):
            raise ProviderClientError(f"Unexpected index type for {symbol}: {type(idx)}", "yahoo")

        values = [row["Open"], row["High"], row["Low"], row["Close"], row["Volume"]]
        # Skip rows with missing values (NaN)
        if any(pd.isna(v) for v in values):
            continue

        day = idx.date()
        ts = utc_datetime_to_ms(datetime(day.year, day.month, day.day, tzinfo=timezone.utc))

        candles.append(Candle(
            ts=ts,
            open=float(row["Open"]),
            high=float(row["High"]),
            low=float(row["Low"]),
            close=float(row["Close"]),
            volume=float(row["Volume"]),
        ))

    return candles


def validate_candles(candles: List[Candle], symbol: str):
    """
    Validate ordering and OHLC relationships.

    Gaps between trading days are expected (weekends, holidays) and are not
    checked here.

    Raises:
        ProviderClientError: If validation fails
    """
    for i, candle in enumerate(candles):
        if i > 0 and candle.ts <= candles[i - 1].ts:
            raise ProviderClientError(
                f"Candles not strictly ordered for {symbol} at index {i}", "yahoo"
            )
        if not all(math.isfinite(v) for v in (candle.open, candle.high, candle.low, candle.close)):
            raise ProviderClientError(f"Invalid OHLC values in candle {i} for {symbol}", "yahoo")
        if not (candle.low <= min(candle.open, candle.close) and max(candle.open, candle.close) <= candle.high):
            raise ProviderClientError(
                f"Invalid OHLC relationship in candle {i} for {symbol}: "
                f"low={candle.low}, open={candle.open}, close={candle.close}, high={candle.high}",
                "yahoo",
            )


class YahooSource(MarketDataSource):
    """Daily-only equities source backed by yfinance."""

    name = "yahoo"

    async def fetch_candles(self, symbol: str, timeframe: str, start_ms: int, end_ms: int) -> List[Candle]:
        if normalize_timeframe(timeframe) != "1d":
            raise ProviderClientError(
                f"Intraday intervals are not supported by Yahoo Finance. Requested: {timeframe}",
                "yahoo",
            )
        if start_ms >= end_ms:
            return []
        return await asyncio.to_thread(fetch_yahoo_candles, symbol.upper(), start_ms, end_ms)
