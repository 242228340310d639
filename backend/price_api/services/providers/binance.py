"""Binance spot ticker provider (USD only, symbol keyed)."""

import json
from typing import Any, Dict, Mapping

from .base import PriceProvider, MalformedResponse, Quote, parse_price


class BinanceProvider(PriceProvider):
    """Tertiary provider.

    ``/api/v3/ticker/price?symbols=["BTCUSDT",..]`` answers an array of
    ``{"symbol": "BTCUSDT", "price": "..."}``. USDT pairs are treated as USD.
    """

    name = "binance"
    default_base_url = "https://api.binance.com"
    default_vocabulary = {
        "bitcoin": "BTCUSDT",
        "ethereum": "ETHUSDT",
        "binancecoin": "BNBUSDT",
        "solana": "SOLUSDT",
        "ripple": "XRPUSDT",
        "cardano": "ADAUSDT",
        "dogecoin": "DOGEUSDT",
        "tron": "TRXUSDT",
        "litecoin": "LTCUSDT",
        "usd-coin": "USDCUSDT",
        "avalanche-2": "AVAXUSDT",
        "chainlink": "LINKUSDT",
        "the-open-network": "TONUSDT",
    }

    async def _request(self, requested: Mapping[str, str]) -> Any:
        symbols = json.dumps(sorted(requested), separators=(",", ":"))
        return await self._get_json(f"{self.base_url}/api/v3/ticker/price", params={"symbols": symbols})

    def normalize(self, raw: Any, requested: Mapping[str, str]) -> Dict[str, Quote]:
        if not isinstance(raw, list):
            raise MalformedResponse(
                f"{self.name}: expected array, got {type(raw).__name__}", provider=self.name
            )

        quotes = {}
        for ticker in raw:
            if not isinstance(ticker, dict):
                continue
            token_id = requested.get(ticker.get("symbol"))
            if token_id is None:
                continue
            usd = parse_price(ticker.get("price"))
            if usd is not None:
                quotes[token_id] = Quote(usd=usd)
        return quotes
