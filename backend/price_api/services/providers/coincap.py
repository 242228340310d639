"""CoinCap price provider (USD only)."""

from typing import Any, Dict, Mapping

from .base import PriceProvider, MalformedResponse, Quote, parse_price


class CoinCapProvider(PriceProvider):
    """Secondary provider.

    ``/v2/assets?ids=..`` answers ``{"data": [{"id": .., "priceUsd": "..."}]}``.
    """

    name = "coincap"
    default_base_url = "https://api.coincap.io/v2"
    default_vocabulary = {
        "bitcoin": "bitcoin",
        "ethereum": "ethereum",
        "tether": "tether",
        "usd-coin": "usd-coin",
        "binancecoin": "binance-coin",
        "solana": "solana",
        "ripple": "xrp",
        "cardano": "cardano",
        "dogecoin": "dogecoin",
        "tron": "tron",
        "litecoin": "litecoin",
        "dai": "multi-collateral-dai",
        "avalanche-2": "avalanche",
        "chainlink": "chainlink",
        "matic-network": "polygon",
    }

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    async def _request(self, requested: Mapping[str, str]) -> Any:
        return await self._get_json(f"{self.base_url}/assets", params={"ids": ",".join(requested)})

    def normalize(self, raw: Any, requested: Mapping[str, str]) -> Dict[str, Quote]:
        if not isinstance(raw, dict) or not isinstance(raw.get("data"), list):
            raise MalformedResponse(f"{self.name}: expected {{'data': [...]}}", provider=self.name)

        quotes = {}
        for asset in raw["data"]:
            if not isinstance(asset, dict):
                continue
            token_id = requested.get(asset.get("id"))
            if token_id is None:
                continue
            usd = parse_price(asset.get("priceUsd"))
            if usd is not None:
                quotes[token_id] = Quote(usd=usd)
        return quotes
