"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from price_api.main import app
from price_api.models import Base
from price_api.services.config import PriceSettings
from price_api.services.engine import PriceEngine
from price_api.services.exchange_rate import ExchangeRateResolver
from price_api.services.fetcher import FetchFailed, FetchResult
from price_api.services.providers.base import ProviderUnavailable, Quote


# Test database file name, created under the per-test tmp_path
TEST_DATABASE_NAME = "price_cache_test.db"

KNOWN_TOKENS = {"bitcoin", "ethereum", "tether", "usd-coin", "solana", "binancecoin"}


class FakeClock:
    """Manually advanced replacement for ``datetime.utcnow``."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSleep:
    """Records requested delays and returns on the next loop iteration."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class StubFetcher:
    """Stands in for MultiSourceFetcher.

    Outcomes are consumed in order; the last one repeats. Setting ``gate``
    holds every fetch until the event is set.
    """

    def __init__(self, known=KNOWN_TOKENS):
        self.known = set(known)
        self.outcomes: List[Union[FetchResult, Exception]] = []
        self.calls: List[List[str]] = []
        self.gate: Optional[asyncio.Event] = None
        self.provider_names = ["stub"]

    def is_known(self, token_id: str) -> bool:
        return token_id in self.known

    def succeed(self, quotes: Dict[str, Quote], source: str = "coingecko") -> None:
        self.outcomes.append(FetchResult(quotes=dict(quotes), source=source))

    def fail(self, error: Exception) -> None:
        self.outcomes.append(error)

    async def fetch(self, token_ids) -> FetchResult:
        self.calls.append(list(token_ids))
        if self.gate is not None:
            await self.gate.wait()

        if not self.outcomes:
            raise FetchFailed(ProviderUnavailable("no outcome configured", provider="stub"), provider="stub")
        outcome = self.outcomes[0] if len(self.outcomes) == 1 else self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(scope="function")
async def session_maker(tmp_path):
    """Create a fresh test database for each test.

    File backed so concurrent sessions get their own connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / TEST_DATABASE_NAME}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def fetcher():
    return StubFetcher()


@pytest.fixture
def settings():
    """Short thresholds and no pacing so tests drive the scheduler directly."""
    return PriceSettings(
        margin_ngn=20.0,
        fresh_threshold_seconds=600,
        stale_threshold_seconds=7200,
        tracked_tokens=["tether", "ethereum", "bitcoin"],
        min_request_interval_seconds=0,
        base_backoff_seconds=60,
        backoff_ceiling_seconds=480,
        initial_retry_delay_seconds=5.0,
        max_retries=2,
        fallback_rate=1500.0,
        rate_sources=[],
    )


@pytest.fixture
async def engine(settings, session_maker, fetcher, clock, fake_sleep):
    """Price engine wired to the test database and a stub fetcher."""
    price_engine = PriceEngine(
        settings,
        session_maker=session_maker,
        rate_resolver=ExchangeRateResolver(sources=[], fallback_rate=settings.fallback_rate, clock=clock),
        fetcher=fetcher,
        clock=clock,
        sleep=fake_sleep,
    )
    yield price_engine

    if fetcher.gate is not None:
        fetcher.gate.set()
    await price_engine.stop()


@pytest.fixture(scope="function")
async def client(engine):
    """Create test client bound to the test engine. Lifespan does not run."""
    app.state.price_engine = engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.price_engine
