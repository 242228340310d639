"""Upstream price provider adapters."""

from typing import Dict, Type

from .base import (
    PriceProvider,
    Quote,
    PriceFetchError,
    ProviderUnavailable,
    MalformedResponse,
    RateLimited,
    NoValidTokens,
    parse_price,
)
from .coingecko import CoinGeckoProvider
from .coincap import CoinCapProvider
from .binance import BinanceProvider

PROVIDER_CLASSES: Dict[str, Type[PriceProvider]] = {
    CoinGeckoProvider.name: CoinGeckoProvider,
    CoinCapProvider.name: CoinCapProvider,
    BinanceProvider.name: BinanceProvider,
}

__all__ = [
    "PriceProvider",
    "Quote",
    "PriceFetchError",
    "ProviderUnavailable",
    "MalformedResponse",
    "RateLimited",
    "NoValidTokens",
    "parse_price",
    "CoinGeckoProvider",
    "CoinCapProvider",
    "BinanceProvider",
    "PROVIDER_CLASSES",
]
