"""Multi-source price fetcher.

Tries providers in priority order and returns one normalized mapping.

Fallback policy:
- the primary provider cascades to the next one only on HTTP 429; any other
  primary failure propagates immediately
- later providers cascade on any failure (network, malformed body, no prices)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .exchange_rate import ExchangeRateResolver
from .providers.base import (
    PriceProvider,
    PriceFetchError,
    Quote,
    RateLimited,
)

logger = logging.getLogger(__name__)


class FetchFailed(Exception):
    """Overall fetch failure, as seen by the scheduler."""

    def __init__(self, cause: Exception, rate_limited: bool = False, provider: Optional[str] = None):
        self.cause = cause
        self.rate_limited = rate_limited
        self.provider = provider
        super().__init__(f"{provider or 'fetch'} failed: {cause}")


class AllProvidersExhausted(FetchFailed):
    """Every provider in the chain failed."""


@dataclass
class FetchResult:
    """Normalized quotes and the provider that produced them."""
    quotes: Dict[str, Quote]
    source: str


class MultiSourceFetcher:
    """Fetches prices from providers in a fixed priority order."""

    def __init__(self, providers: List[PriceProvider], rate_resolver: ExchangeRateResolver):
        if not providers:
            raise ValueError("At least one price provider is required")
        self.providers = providers
        self.rate_resolver = rate_resolver

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]

    def is_known(self, token_id: str) -> bool:
        """Whether any provider can price this token."""
        return any(p.knows(token_id) for p in self.providers)

    async def fetch(self, token_ids: Iterable[str]) -> FetchResult:
        """Fetch normalized prices for canonical token ids.

        Raises:
            FetchFailed: If the primary provider fails with anything but a rate limit.
            AllProvidersExhausted: If every provider in the chain failed.
        """
        token_ids = list(dict.fromkeys(token_ids))
        last_error: Optional[Exception] = None
        last_provider: Optional[str] = None
        rate_limited = False

        for index, provider in enumerate(self.providers):
            try:
                quotes = await provider.fetch_quotes(token_ids)
            except RateLimited as e:
                logger.warning(f"{provider.name}: rate limited, trying next provider")
                rate_limited = True
                last_error, last_provider = e, provider.name
                continue
            except PriceFetchError as e:
                if index == 0:
                    logger.error(f"{provider.name}: primary provider failed: {e}")
                    raise FetchFailed(e, rate_limited=False, provider=provider.name) from e
                logger.warning(f"{provider.name}: failed ({e}), trying next provider")
                last_error, last_provider = e, provider.name
                continue

            quotes = await self._fill_ngn(quotes)
            unmapped = [t for t in token_ids if t not in quotes]
            if unmapped:
                logger.info(f"{provider.name}: no price for {', '.join(unmapped)}")
            logger.info(f"Fetched {len(quotes)} prices from {provider.name}")
            return FetchResult(quotes=quotes, source=provider.name)

        raise AllProvidersExhausted(last_error, rate_limited=rate_limited, provider=last_provider)

    async def _fill_ngn(self, quotes: Dict[str, Quote]) -> Dict[str, Quote]:
        """Derive NGN from USD for tokens the provider priced only in USD."""
        missing = [t for t, q in quotes.items() if q.ngn is None and q.usd is not None]
        if not missing:
            return quotes

        rate = await self.rate_resolver.get_rate()
        filled = dict(quotes)
        for token_id in missing:
            filled[token_id] = Quote(usd=quotes[token_id].usd, ngn=quotes[token_id].usd * rate)
        return filled
