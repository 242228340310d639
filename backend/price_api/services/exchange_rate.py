"""USD to NGN exchange rate resolver.

Tries each configured FX source in order, then falls back to the configured
constant, so a rate is always available even if every API is down.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"

# Fallback rates are kept briefly so live sources are retried sooner
FALLBACK_CACHE_SECONDS = 120


def _extract_nested(data: Any, dotted_path: str) -> Any:
    """Drill into ``data`` using a dotted key path like ``rates.NGN``."""
    for key in dotted_path.split("."):
        if not isinstance(data, dict):
            raise KeyError(dotted_path)
        data = data[key]
    return data


class ExchangeRateResolver:
    """Resolves the NGN-per-USD multiplier."""

    def __init__(
        self,
        sources: List[Dict[str, str]],
        fallback_rate: float,
        cache_ttl_seconds: int = 900,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.sources = sources
        self.fallback_rate = fallback_rate
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock

        self._rate: Optional[float] = None
        self._source: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @property
    def source(self) -> Optional[str]:
        """Name of the source that produced the current rate."""
        return self._source

    async def _fetch_json(self, url: str) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers={"Accept": "application/json"}) as resp:
                if resp.status != 200:
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message="unexpected status"
                    )
                return await resp.json(content_type=None)

    async def _fetch_live_rate(self) -> Optional[tuple]:
        """Try each source in order and return the first usable (rate, name)."""
        for source in self.sources:
            name = source.get("name") or source.get("url", "unknown")
            try:
                data = await self._fetch_json(source["url"])
                rate = float(_extract_nested(data, source.get("path", "rates.NGN")))
            except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Exchange rate fetch from {name} failed: {e}")
                continue

            if rate <= 0:
                logger.warning(f"Exchange rate from {name} is not positive: {rate}")
                continue

            logger.info(f"Fetched live NGN/USD rate {rate} from {name}")
            return rate, name
        return None

    async def get_rate(self) -> float:
        """Return NGN per 1 USD. Never raises."""
        now = self._clock()
        if self._rate is not None and self._expires_at is not None and now < self._expires_at:
            return self._rate

        live = await self._fetch_live_rate()
        if live is not None:
            self._rate, self._source = live
            self._expires_at = now + timedelta(seconds=self.cache_ttl_seconds)
            return self._rate

        logger.warning(f"All exchange rate sources failed, using fallback rate {self.fallback_rate}")
        self._rate = self.fallback_rate
        self._source = FALLBACK_SOURCE
        self._expires_at = now + timedelta(seconds=min(FALLBACK_CACHE_SECONDS, self.cache_ttl_seconds))
        return self._rate

    def get_status(self) -> Dict[str, Any]:
        return {
            "rate": self._rate,
            "source": self._source,
            "fallback_rate": self.fallback_rate,
            "expires_at": self._expires_at.isoformat() if self._expires_at else None,
        }
