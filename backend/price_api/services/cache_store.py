"""Two-tier price cache.

The in-memory mapping answers every read and drives freshness decisions; the
SQLite tier survives restarts. Reads never wait on a write: the memory merge
happens before the durable write is awaited.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import PriceCacheEntry
from .margin import MarginedQuote

logger = logging.getLogger(__name__)


class Freshness(str, Enum):
    """Staleness classification of cached data."""
    FRESH = "fresh"
    USABLE_STALE = "usable_stale"
    EXPIRED = "expired"


class CacheTier(str, Enum):
    """Where a served record came from."""
    MEMORY = "memory"
    DATABASE = "database"


@dataclass(frozen=True)
class PriceRecord:
    """Cached price of one token. Replaced whole, never field by field."""
    token_id: str
    usd_price: Optional[float]
    ngn_price: Optional[float]
    ngn_price_before_margin: Optional[float]
    last_updated: datetime
    source: str

    @classmethod
    def from_quote(cls, token_id: str, quote: MarginedQuote, source: str, at: datetime) -> "PriceRecord":
        return cls(
            token_id=token_id,
            usd_price=quote.usd,
            ngn_price=quote.ngn,
            ngn_price_before_margin=quote.ngn_before_margin,
            last_updated=at,
            source=source,
        )

    @classmethod
    def from_row(cls, row: PriceCacheEntry) -> "PriceRecord":
        return cls(
            token_id=row.token_id,
            usd_price=row.usd_price,
            ngn_price=row.ngn_price,
            ngn_price_before_margin=row.original_ngn,
            last_updated=row.last_updated,
            source=row.source,
        )

    def prices(self, currencies: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """Price per currency, limited to ``currencies`` and non-null values."""
        values = {"usd": self.usd_price, "ngn": self.ngn_price}
        wanted = list(values) if currencies is None else list(currencies)
        return {c: values[c] for c in wanted if values.get(c) is not None}


@dataclass
class CacheState:
    """Process-wide cache and fetch bookkeeping.

    Mutated by the refresh scheduler; the read path only promotes durable
    hits into ``prices``.
    """
    prices: Dict[str, PriceRecord] = field(default_factory=dict)
    last_successful_fetch: Optional[datetime] = None
    is_fetching: bool = False
    fetch_attempts: int = 0
    consecutive_failures: int = 0
    rate_limited_until: Optional[datetime] = None
    last_request_time: Optional[datetime] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class CacheRead:
    """Result of a tiered read."""
    records: Dict[str, PriceRecord]
    tiers: Dict[str, CacheTier]
    missing: List[str]

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @property
    def tier(self) -> Optional[str]:
        """Single tier name, ``mixed`` for both, None when nothing was found."""
        found = set(self.tiers.values())
        if not found:
            return None
        if len(found) > 1:
            return "mixed"
        return found.pop().value


class CacheStore:
    """Reads and writes prices across the memory and durable tiers."""

    def __init__(
        self,
        state: CacheState,
        session_maker: async_sessionmaker,
        fresh_threshold_seconds: int,
        stale_threshold_seconds: int,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        if stale_threshold_seconds <= fresh_threshold_seconds:
            raise ValueError("stale threshold must be greater than fresh threshold")
        self.state = state
        self._session_maker = session_maker
        self.fresh_threshold = timedelta(seconds=fresh_threshold_seconds)
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self._clock = clock

    # Freshness
    def classify(self, age: timedelta) -> Freshness:
        """Classify data of the given age."""
        if age < self.fresh_threshold:
            return Freshness.FRESH
        if age < self.stale_threshold:
            return Freshness.USABLE_STALE
        return Freshness.EXPIRED

    def age_of(self, records: Iterable[PriceRecord]) -> Optional[timedelta]:
        """Age of a record set, measured by its oldest record."""
        timestamps = [r.last_updated for r in records]
        if not timestamps:
            return None
        return max(self._clock() - min(timestamps), timedelta(0))

    def freshness_of(self, records: Iterable[PriceRecord]) -> Freshness:
        """Classify a record set. An empty set counts as expired."""
        age = self.age_of(records)
        if age is None:
            return Freshness.EXPIRED
        return self.classify(age)

    # Startup
    async def load(self) -> int:
        """Initialize the memory tier from the durable tier.

        Returns:
            Number of tokens loaded
        """
        try:
            records = await self.read_durable()
        except SQLAlchemyError as e:
            logger.error(f"Error loading price cache from database: {e}")
            return 0

        if not records:
            logger.info("Price cache database is empty, waiting for first fetch")
            return 0

        self.promote(records.values())
        latest = max(r.last_updated for r in records.values())
        if self.state.last_successful_fetch is None or latest > self.state.last_successful_fetch:
            self.state.last_successful_fetch = latest

        age_minutes = int((self._clock() - latest).total_seconds() // 60)
        logger.info(f"Loaded {len(records)} tokens from database ({age_minutes} min old)")
        return len(records)

    # Writes
    async def upsert(self, records: Iterable[PriceRecord]) -> bool:
        """Merge records into memory, then persist them.

        Returns:
            True if the durable write succeeded. The memory merge stands either way.
        """
        records = list(records)
        if not records:
            return True

        # No await between these assignments, so readers never see a partial merge
        merged = dict(self.state.prices)
        for record in records:
            merged[record.token_id] = record
        self.state.prices = merged

        try:
            async with self._session_maker() as session:
                for record in records:
                    await session.merge(PriceCacheEntry(
                        token_id=record.token_id,
                        usd_price=record.usd_price,
                        ngn_price=record.ngn_price,
                        original_ngn=record.ngn_price_before_margin,
                        last_updated=record.last_updated,
                        source=record.source,
                    ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist {len(records)} prices: {e}")
            return False

        logger.debug(f"Persisted {len(records)} prices")
        return True

    def promote(self, records: Iterable[PriceRecord]) -> int:
        """Fill memory with durable records that are absent or newer.

        Returns:
            Number of records promoted
        """
        merged = dict(self.state.prices)
        promoted = 0
        for record in records:
            current = merged.get(record.token_id)
            if current is None or current.last_updated < record.last_updated:
                merged[record.token_id] = record
                promoted += 1
        if promoted:
            self.state.prices = merged
        return promoted

    # Reads
    def read_memory(self, token_ids: Optional[Iterable[str]] = None) -> Dict[str, PriceRecord]:
        prices = self.state.prices
        if token_ids is None:
            return dict(prices)
        return {t: prices[t] for t in token_ids if t in prices}

    async def read_durable(self, token_ids: Optional[Iterable[str]] = None) -> Dict[str, PriceRecord]:
        """Read records from the durable tier.

        Raises:
            SQLAlchemyError: On database failure.
        """
        query = select(PriceCacheEntry)
        if token_ids is not None:
            token_ids = list(token_ids)
            if not token_ids:
                return {}
            query = query.where(PriceCacheEntry.token_id.in_(token_ids))

        async with self._session_maker() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
        return {row.token_id: PriceRecord.from_row(row) for row in rows}

    async def read(self, token_ids: Iterable[str]) -> CacheRead:
        """Memory first, durable tier for the misses; durable hits are promoted."""
        token_ids = list(dict.fromkeys(token_ids))
        records = self.read_memory(token_ids)
        tiers = {t: CacheTier.MEMORY for t in records}

        misses = [t for t in token_ids if t not in records]
        if misses:
            try:
                durable = await self.read_durable(misses)
            except SQLAlchemyError as e:
                logger.error(f"Database read failed: {e}")
                durable = {}
            if durable:
                self.promote(durable.values())
                records.update(durable)
                tiers.update({t: CacheTier.DATABASE for t in durable})

        missing = [t for t in token_ids if t not in records]
        return CacheRead(records=records, tiers=tiers, missing=missing)

    def summary(self) -> Dict[str, Any]:
        """Read-only cache summary for health reporting."""
        last = self.state.last_successful_fetch
        age_seconds = int((self._clock() - last).total_seconds()) if last else None
        return {
            "memory_token_count": len(self.state.prices),
            "memory_tokens": sorted(self.state.prices),
            "last_successful_fetch": last.isoformat() if last else None,
            "cache_age_seconds": age_seconds,
            "freshness": self.classify(self._clock() - last).value if last else None,
            "fresh_threshold_seconds": int(self.fresh_threshold.total_seconds()),
            "stale_threshold_seconds": int(self.stale_threshold.total_seconds()),
            "cache_status": "has_data" if self.state.prices else "empty",
        }
