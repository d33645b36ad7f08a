"""
Binance spot klines.

Pages forward from startTime in batches of up to 1000 bars.
"""

from typing import List

import httpx

from candles import Candle, dedupe_and_sort
from errors import ProviderClientError
from market_data.base import KlineHttpSource
from utils import normalize_symbol, normalize_timeframe, timeframe_to_ms

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"


def parse_klines(data) -> List[Candle]:
    """Parse Binance kline arrays: [openTime, open, high, low, close, volume, ...]."""
    if not isinstance(data, list):
        raise ProviderClientError("binance_spot returned an unexpected payload", "binance_spot")
    return [
        Candle(
            ts=int(kline[0]),
            open=float(kline[1]),
            high=float(kline[2]),
            low=float(kline[3]),
            close=float(kline[4]),
            volume=float(kline[5]),
        )
        for kline in data
    ]


class BinanceSpotSource(KlineHttpSource):
    name = "binance_spot"
    page_limit = 1000
    url = BINANCE_KLINES_URL

    async def _paginate(self, client: httpx.AsyncClient, symbol, timeframe, start_ms, end_ms):
        symbol = normalize_symbol(symbol)
        interval = normalize_timeframe(timeframe)
        step_ms = timeframe_to_ms(interval)

        candles: List[Candle] = []
        cursor = start_ms
        first = True

        while cursor < end_ms:
            if not first:
                await self.throttle()
            first = False

            data = await self.get_json(client, self.url, {
                "symbol": symbol,
                "interval": interval,
                "startTime": cursor,
                "endTime": end_ms - 1,
                "limit": self.page_limit,
            })
            batch = parse_klines(data)
            if not batch:
                break

            candles.extend(c for c in batch if start_ms <= c.ts < end_ms)
            cursor = batch[-1].ts + step_ms

            if len(batch) < self.page_limit:
                break

        return dedupe_and_sort(candles)
