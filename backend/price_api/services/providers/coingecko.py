"""CoinGecko price provider.

``/simple/price`` answers a keyed object ``{"bitcoin": {"usd": .., "ngn": ..}}``
and supplies NGN directly. Tokens only listed by contract address get one
``/simple/token_price/{platform}`` lookup each.
"""

import logging
from typing import Any, Dict, Iterable, Mapping

from .base import (
    PriceProvider,
    PriceFetchError,
    MalformedResponse,
    Quote,
    parse_price,
)

logger = logging.getLogger(__name__)


class CoinGeckoProvider(PriceProvider):
    """Primary provider; canonical token ids are CoinGecko ids."""

    name = "coingecko"
    default_base_url = "https://api.coingecko.com/api/v3"
    default_vocabulary = {
        token: token
        for token in (
            "bitcoin",
            "ethereum",
            "tether",
            "usd-coin",
            "binancecoin",
            "solana",
            "ripple",
            "cardano",
            "dogecoin",
            "tron",
            "the-open-network",
            "polygon-ecosystem-token",
            "matic-network",
            "litecoin",
            "dai",
            "avalanche-2",
            "chainlink",
            "celo",
        )
    }

    vs_currencies = "usd,ngn"

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.settings.api_key:
            headers["x-cg-demo-api-key"] = self.settings.api_key
        return headers

    def knows(self, token_id: str) -> bool:
        return token_id in self.vocabulary or token_id in self.settings.contract_tokens

    async def _request(self, requested: Mapping[str, str]) -> Any:
        params = {"ids": ",".join(requested), "vs_currencies": self.vs_currencies}
        return await self._get_json(f"{self.base_url}/simple/price", params=params)

    def normalize(self, raw: Any, requested: Mapping[str, str]) -> Dict[str, Quote]:
        if not isinstance(raw, dict):
            raise MalformedResponse(
                f"{self.name}: expected object, got {type(raw).__name__}", provider=self.name
            )

        quotes = {}
        for key, token_id in requested.items():
            prices = raw.get(key)
            if prices is None:
                continue
            if not isinstance(prices, dict):
                raise MalformedResponse(f"{self.name}: bad price entry for {key}", provider=self.name)
            quote = Quote(usd=parse_price(prices.get("usd")), ngn=parse_price(prices.get("ngn")))
            if not quote.is_empty:
                quotes[token_id] = quote
        return quotes

    def normalize_contract(self, raw: Any, address: str) -> Quote:
        """Normalize a ``/simple/token_price`` body keyed by contract address."""
        if not isinstance(raw, dict):
            raise MalformedResponse(
                f"{self.name}: expected object, got {type(raw).__name__}", provider=self.name
            )
        # CoinGecko lowercases contract addresses in its response
        prices = raw.get(address.lower()) or raw.get(address)
        if not isinstance(prices, dict):
            return Quote()
        return Quote(usd=parse_price(prices.get("usd")), ngn=parse_price(prices.get("ngn")))

    async def _supplement(self, token_ids: Iterable[str], found: Mapping[str, Quote]) -> Dict[str, Quote]:
        """One contract-address lookup per token missing from the id lookup."""
        extra = {}
        for token_id in token_ids:
            if token_id in found:
                continue
            contract = self.settings.contract_tokens.get(token_id)
            if not contract:
                continue

            platform = contract.get("platform")
            address = contract.get("address")
            if not platform or not address:
                logger.warning(f"{self.name}: incomplete contract mapping for {token_id}")
                continue

            try:
                raw = await self._get_json(
                    f"{self.base_url}/simple/token_price/{platform}",
                    params={"contract_addresses": address, "vs_currencies": self.vs_currencies},
                )
                quote = self.normalize_contract(raw, address)
            except PriceFetchError as e:
                logger.warning(f"{self.name}: contract lookup for {token_id} failed: {e}")
                continue

            if quote.is_empty:
                logger.info(f"{self.name}: no contract price for {token_id} ({platform}:{address})")
                continue
            extra[token_id] = quote
        return extra
