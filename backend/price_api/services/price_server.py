"""Read path for price requests.

Never calls an upstream provider. Priority:
1. memory tier, when every requested token is there
2. durable tier for the misses (hits are promoted into memory)
3. non-blocking scheduler kick when the served data is incomplete, not fresh, or absent
4. emergency defaults, only when neither tier had anything
5. ServiceUnavailable with an estimate of the next upstream attempt
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .audit_log import AuditLogService, ApiCallEntry
from .cache_store import CacheStore, Freshness
from .config import PriceSettings
from .margin import apply_margin
from .providers.base import Quote
from .scheduler import KickResult, RefreshScheduler

logger = logging.getLogger(__name__)

PRICE_ENDPOINT = "/api/v3/simple/price"
SUPPORTED_CURRENCIES = ("usd", "ngn")
EMERGENCY_SOURCE = "emergency_defaults"


class ServiceUnavailable(Exception):
    """No cached data and no emergency default for the requested tokens."""

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        minutes = retry_after_seconds // 60
        super().__init__(f"No price data available. Next price fetch attempt in {minutes} minutes.")


@dataclass
class PriceResult:
    """Prices served for one request plus metadata about where they came from."""
    prices: Dict[str, Dict[str, float]]
    tier: str  # memory, database, mixed, emergency_defaults
    freshness: Optional[Freshness] = None
    age_seconds: Optional[int] = None
    missing: List[str] = field(default_factory=list)
    is_default: bool = False
    refresh: Optional[KickResult] = None


def parse_token_ids(ids: Optional[str]) -> List[str]:
    """Split a comma-separated ``ids`` parameter, dropping blanks and duplicates."""
    if not ids:
        return []
    return list(dict.fromkeys(t.strip().lower() for t in ids.split(",") if t.strip()))


def parse_currencies(vs_currencies: Optional[str]) -> List[str]:
    """Requested currencies we can serve; all supported ones when none given.

    Unsupported currencies are dropped, so the result may be empty.
    """
    if not vs_currencies:
        return list(SUPPORTED_CURRENCIES)
    wanted = [c.strip().lower() for c in vs_currencies.split(",") if c.strip()]
    return [c for c in dict.fromkeys(wanted) if c in SUPPORTED_CURRENCIES]


class PriceReadService:
    """Serves prices from the cache tiers."""

    def __init__(
        self,
        cache_store: CacheStore,
        scheduler: RefreshScheduler,
        audit_log: AuditLogService,
        settings: PriceSettings,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.cache_store = cache_store
        self.scheduler = scheduler
        self.audit_log = audit_log
        self.settings = settings
        self._clock = clock

    async def get_prices(self, token_ids: List[str], currencies: Iterable[str]) -> PriceResult:
        """Serve prices for ``token_ids``.

        Raises:
            ServiceUnavailable: If there is nothing to serve at all.
        """
        started = time.perf_counter()
        currencies = list(currencies)

        cached = await self.cache_store.read(token_ids)

        if cached.records:
            freshness = self.cache_store.freshness_of(cached.records.values())
            age = self.cache_store.age_of(cached.records.values())

            refresh = None
            if not cached.is_complete or freshness != Freshness.FRESH:
                refresh = self.scheduler.kick(token_ids)
                logger.info(
                    f"Serving {freshness.value} {cached.tier} data "
                    f"({len(cached.records)}/{len(token_ids)} tokens), refresh: {refresh.value}"
                )

            result = PriceResult(
                prices={t: r.prices(currencies) for t, r in cached.records.items()},
                tier=cached.tier,
                freshness=freshness,
                age_seconds=int(age.total_seconds()) if age is not None else None,
                missing=cached.missing,
                refresh=refresh,
            )
            self._log_call(self._status_tag(cached.tier, cached.is_complete), token_ids, started)
            return result

        refresh = self.scheduler.kick(token_ids)

        defaults = self._emergency_defaults(token_ids, currencies)
        if defaults:
            logger.warning(f"No cached data, serving emergency defaults for {', '.join(defaults)}")
            self._log_call(EMERGENCY_SOURCE, token_ids, started)
            return PriceResult(
                prices=defaults,
                tier=EMERGENCY_SOURCE,
                missing=[t for t in token_ids if t not in defaults],
                is_default=True,
                refresh=refresh,
            )

        retry_after = self.scheduler.next_attempt_in()
        logger.warning(f"No price data for {', '.join(token_ids)}, next attempt in {retry_after}s")
        self._log_call("service_unavailable", token_ids, started)
        raise ServiceUnavailable(retry_after)

    def _emergency_defaults(self, token_ids: List[str], currencies: List[str]) -> Dict[str, Dict[str, float]]:
        """Hardcoded prices for a handful of high-liquidity tokens."""
        table = self.settings.emergency_defaults
        quotes = {
            t: Quote(usd=table[t], ngn=table[t] * self.settings.fallback_rate)
            for t in token_ids if t in table
        }
        margined = apply_margin(quotes, self.settings.margin_ngn)
        result = {}
        for token_id, quote in margined.items():
            values = {"usd": quote.usd, "ngn": quote.ngn}
            result[token_id] = {c: values[c] for c in currencies if values.get(c) is not None}
        return result

    @staticmethod
    def _status_tag(tier: str, complete: bool) -> str:
        if not complete:
            return "database_partial"
        if tier == "memory":
            return "memory_cache_hit"
        return "database_hit"

    def _log_call(self, status: str, token_ids: List[str], started: float) -> None:
        self.audit_log.record_api_call_nowait(ApiCallEntry(
            endpoint=PRICE_ENDPOINT,
            status=status,
            response_time_ms=int((time.perf_counter() - started) * 1000),
            tokens=token_ids,
            timestamp=self._clock(),
        ))
