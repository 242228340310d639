"""Base classes and error taxonomy for upstream price providers.

Every provider is an isolated translation boundary: it maps canonical token
ids to its own vocabulary, performs the HTTP call, and normalizes its own
response shape into ``{token_id: Quote}``. ``normalize`` never touches the
network, so adapters can be tested against fixed response bodies.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

import aiohttp

from ..config import ProviderSettings

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; PayCryptPriceAPI/1.0)",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}


class PriceFetchError(Exception):
    """Base class for provider-level failures."""

    def __init__(self, message: str, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)


class ProviderUnavailable(PriceFetchError):
    """Network error, timeout or unexpected HTTP status."""


class MalformedResponse(ProviderUnavailable):
    """Response body does not have the expected shape."""


class RateLimited(PriceFetchError):
    """Provider answered HTTP 429."""

    def __init__(self, message: str, provider: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, provider)


class NoValidTokens(PriceFetchError):
    """None of the requested tokens could be mapped or priced by the provider."""


@dataclass(frozen=True)
class Quote:
    """Raw provider price for one token, never margin-inclusive."""
    usd: Optional[float] = None
    ngn: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.usd is None and self.ngn is None


def parse_price(value: Any) -> Optional[float]:
    """Coerce a provider price (number or numeric string) to float.

    Returns None for missing, non-numeric or non-positive values.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if price != price or price <= 0:  # NaN or non-positive
        return None
    return price


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class PriceProvider(ABC):
    """Base class for upstream price providers."""

    name: str = ""
    default_base_url: str = ""
    default_vocabulary: Dict[str, str] = {}

    def __init__(self, settings: Optional[ProviderSettings] = None, timeout_seconds: float = 45.0):
        self.settings = settings or ProviderSettings()
        self.base_url = (self.settings.base_url or self.default_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.vocabulary: Dict[str, str] = {**self.default_vocabulary, **self.settings.vocabulary}

    def map_tokens(self, token_ids: Iterable[str]) -> Dict[str, str]:
        """Map canonical ids to provider keys; unmapped ids are dropped.

        Returns:
            Dict of provider key -> canonical token id
        """
        mapped = {}
        for token_id in token_ids:
            key = self.vocabulary.get(token_id)
            if key is not None:
                mapped[key] = token_id
        return mapped

    def knows(self, token_id: str) -> bool:
        """Whether this provider can price a canonical token."""
        return token_id in self.vocabulary

    def _headers(self) -> Dict[str, str]:
        return dict(DEFAULT_HEADERS)

    async def _get_json(self, url: str, params: Optional[Mapping[str, str]] = None) -> Any:
        """GET a JSON document, translating failures into the error taxonomy."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.get(url, params=params) as resp:
                    if resp.status == 429:
                        raise RateLimited(
                            f"{self.name} returned 429 Too Many Requests",
                            provider=self.name,
                            retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                        )
                    if resp.status != 200:
                        raise ProviderUnavailable(f"{self.name} returned {resp.status}", provider=self.name)
                    body = await resp.text()
        except asyncio.TimeoutError:
            raise ProviderUnavailable(
                f"{self.name} timed out after {self.timeout_seconds:.0f}s", provider=self.name
            )
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(f"{self.name} request failed: {e}", provider=self.name)

        try:
            return json.loads(body)
        except ValueError as e:
            raise MalformedResponse(f"{self.name} returned invalid JSON: {e}", provider=self.name)

    @abstractmethod
    def normalize(self, raw: Any, requested: Mapping[str, str]) -> Dict[str, Quote]:
        """Translate a raw response body into ``{token_id: Quote}``.

        Args:
            raw: Decoded JSON body
            requested: Provider key -> canonical token id for this call

        Raises:
            MalformedResponse: If the body does not have the provider's shape.
        """
        pass

    @abstractmethod
    async def _request(self, requested: Mapping[str, str]) -> Any:
        """Perform the provider call for the mapped keys and return the raw body."""
        pass

    async def fetch_quotes(self, token_ids: Iterable[str]) -> Dict[str, Quote]:
        """Fetch and normalize prices for canonical token ids.

        Raises:
            NoValidTokens: If nothing could be mapped or priced.
            RateLimited, ProviderUnavailable, MalformedResponse: On provider failure.
        """
        token_ids = list(token_ids)
        requested = self.map_tokens(token_ids)
        quotes: Dict[str, Quote] = {}

        if requested:
            raw = await self._request(requested)
            quotes = self.normalize(raw, requested)

        quotes.update(await self._supplement(token_ids, quotes))

        if not quotes:
            raise NoValidTokens(
                f"{self.name} returned no prices for {', '.join(token_ids) or 'empty request'}",
                provider=self.name,
            )

        logger.debug(f"{self.name}: priced {len(quotes)}/{len(token_ids)} tokens")
        return quotes

    async def _supplement(self, token_ids: Iterable[str], found: Mapping[str, Quote]) -> Dict[str, Quote]:
        """Hook for providers with an alternate lookup key. Default: none."""
        return {}
