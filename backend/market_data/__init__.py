"""
Market data providers for historical data ingestion.
"""

from .base import KlineHttpSource, MarketDataSource
from .binance import BinanceSpotSource
from .cryptocompare import CryptoCompareSource
from .presets import PresetSyntheticSource
from .yahoo import YahooSource

__all__ = [
    'MarketDataSource',
    'KlineHttpSource',
    'BinanceSpotSource',
    'CryptoCompareSource',
    'PresetSyntheticSource',
    'YahooSource',
    'build_source',
]


def build_source(exchange: str, cryptocompare_api_key: str = "", client=None) -> MarketDataSource:
    """
    Build the provider for an exchange name.

    Raises:
        ValueError: If the exchange has no provider
    """
    if exchange in ("binance", "binance_spot"):
        return BinanceSpotSource(client=client)
    if exchange == "cryptocompare":
        return CryptoCompareSource(api_key=cryptocompare_api_key, client=client)
    if exchange == "yahoo":
        return YahooSource()
    if exchange == "sim":
        return PresetSyntheticSource()
    raise ValueError(f"No market data provider for exchange: {exchange}")
