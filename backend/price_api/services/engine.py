"""Wiring of the price service components around one shared CacheState."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import async_session_maker
from .audit_log import AuditLogService
from .cache_store import CacheState, CacheStore
from .config import PriceSettings
from .exchange_rate import ExchangeRateResolver
from .fetcher import MultiSourceFetcher
from .price_server import PriceReadService
from .providers import PROVIDER_CLASSES, PriceProvider
from .scheduler import RefreshScheduler

logger = logging.getLogger(__name__)


def build_providers(settings: PriceSettings) -> List[PriceProvider]:
    """Instantiate enabled providers in priority order."""
    providers = []
    for name in settings.provider_priority:
        provider_settings = settings.provider(name)
        if not provider_settings.enabled:
            logger.info(f"Provider {name} disabled by configuration")
            continue
        provider_class = PROVIDER_CLASSES[name]
        providers.append(provider_class(provider_settings, timeout_seconds=settings.request_timeout_seconds))
    return providers


class PriceEngine:
    """Owns the cache state and every component that reads or writes it."""

    def __init__(
        self,
        settings: Optional[PriceSettings] = None,
        session_maker: Optional[async_sessionmaker] = None,
        providers: Optional[List[PriceProvider]] = None,
        rate_resolver: Optional[ExchangeRateResolver] = None,
        fetcher: Optional[MultiSourceFetcher] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or PriceSettings()
        session_maker = session_maker or async_session_maker

        self.state = CacheState()
        self.rate_resolver = rate_resolver or ExchangeRateResolver(
            sources=self.settings.rate_sources,
            fallback_rate=self.settings.fallback_rate,
            cache_ttl_seconds=self.settings.rate_cache_ttl_seconds,
            timeout_seconds=self.settings.rate_timeout_seconds,
            clock=clock,
        )
        self.fetcher = fetcher or MultiSourceFetcher(
            providers if providers is not None else build_providers(self.settings),
            self.rate_resolver,
        )
        self.cache_store = CacheStore(
            self.state,
            session_maker,
            fresh_threshold_seconds=self.settings.fresh_threshold_seconds,
            stale_threshold_seconds=self.settings.stale_threshold_seconds,
            clock=clock,
        )
        self.audit_log = AuditLogService(session_maker)
        self.scheduler = RefreshScheduler(
            self.state,
            self.fetcher,
            self.cache_store,
            self.audit_log,
            self.settings,
            clock=clock,
            sleep=sleep,
        )
        self.reader = PriceReadService(
            self.cache_store,
            self.scheduler,
            self.audit_log,
            self.settings,
            clock=clock,
        )

    async def start(self) -> int:
        """Load the durable tier into memory and start the refresh loop.

        Returns:
            Number of tokens loaded from the durable tier
        """
        loaded = await self.cache_store.load()
        await self.scheduler.start()
        return loaded

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.audit_log.flush()

    def health(self) -> Dict[str, Any]:
        return {
            "margin": f"+{self.settings.margin_ngn:g} NGN",
            "cache": self.cache_store.summary(),
            "scheduler": self.scheduler.status(),
            "exchange_rate": self.rate_resolver.get_status(),
        }


def get_price_engine(request: Request) -> PriceEngine:
    """Dependency returning the application's price engine."""
    return request.app.state.price_engine
