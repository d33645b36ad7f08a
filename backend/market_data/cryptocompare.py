"""
CryptoCompare historical OHLCV.

Pages backward from toTs (seconds) in batches of up to 2000 bars. Sub-hour
timeframes other than 1m use the minute endpoint with an aggregate.
"""

from typing import List, Tuple

import httpx

from candles import Candle, dedupe_and_sort
from errors import ProviderClientError
from market_data.base import KlineHttpSource
from utils import normalize_symbol, normalize_timeframe

CRYPTOCOMPARE_BASE_URL = "https://min-api.cryptocompare.com/data"

STABLECOIN_QUOTES = ("USDT", "USDC", "BUSD", "DAI", "TUSD", "UST")
FIAT_QUOTES = ("USD", "EUR", "GBP", "JPY", "RUB", "AUD", "CAD")

# timeframe -> (endpoint, aggregate)
ENDPOINTS = {
    "1m": ("v2/histominute", 1),
    "5m": ("v2/histominute", 5),
    "15m": ("v2/histominute", 15),
    "1h": ("v2/histohour", 1),
    "1d": ("v2/histoday", 1),
}


def split_symbol(symbol: str) -> Tuple[str, str]:
    """Split "BTCUSDT" into ("BTC", "USDT"); unknown quotes default to USD."""
    normalized = normalize_symbol(symbol)
    for quote in STABLECOIN_QUOTES + FIAT_QUOTES:
        if normalized.endswith(quote) and len(normalized) > len(quote):
            return normalized[:-len(quote)], quote
    return normalized, "USD"


def parse_histo(payload) -> List[Candle]:
    """
    Parse a histo* response body.

    Raises:
        ProviderClientError: If the API reports an error
    """
    if not isinstance(payload, dict):
        raise ProviderClientError("cryptocompare returned an unexpected payload", "cryptocompare")
    if payload.get("Response") == "Error":
        raise ProviderClientError(
            f"cryptocompare API error: {payload.get('Message') or 'Unknown error'}",
            "cryptocompare",
        )

    rows = (payload.get("Data") or {}).get("Data") or []
    return [
        Candle(
            ts=int(row["time"]) * 1000,
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row.get("volumefrom", 0.0)),
        )
        # Empty placeholder bars before listing come back as all zeros
        for row in rows
        if row.get("open", 0) > 0 or row.get("close", 0) > 0
    ]


class CryptoCompareSource(KlineHttpSource):
    name = "cryptocompare"
    page_limit = 2000
    base_url = CRYPTOCOMPARE_BASE_URL

    def __init__(self, api_key: str = "", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    async def _paginate(self, client: httpx.AsyncClient, symbol, timeframe, start_ms, end_ms):
        fsym, tsym = split_symbol(symbol)
        endpoint, aggregate = ENDPOINTS[normalize_timeframe(timeframe)]

        candles: List[Candle] = []
        to_ts = end_ms // 1000
        start_ts = start_ms // 1000
        first = True

        while to_ts > start_ts:
            if not first:
                await self.throttle()
            first = False

            params = {"fsym": fsym, "tsym": tsym, "limit": self.page_limit, "toTs": to_ts}
            if aggregate > 1:
                params["aggregate"] = aggregate
            if self.api_key:
                params["api_key"] = self.api_key

            batch = parse_histo(await self.get_json(client, f"{self.base_url}/{endpoint}", params))
            if not batch:
                break

            candles.extend(c for c in batch if start_ms <= c.ts < end_ms)

            oldest = min(c.ts for c in batch)
            to_ts = oldest // 1000 - 1
            if oldest <= start_ms or len(batch) < self.page_limit:
                break

        return dedupe_and_sort(candles)
