"""Audit trail service for fetch outcomes and served API calls."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Set
from dataclasses import dataclass, field

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import FetchLog, ApiCallMetric

logger = logging.getLogger(__name__)


@dataclass
class FetchLogEntry:
    """Represents the outcome of one fetch campaign."""
    status: str  # success, rate_limited, error
    reason: str  # timer, kick, manual, retry
    tokens: Sequence[str] = field(default_factory=list)
    source: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class ApiCallEntry:
    """Represents the outcome of one served request."""
    endpoint: str
    status: str
    response_time_ms: int
    tokens: Sequence[str] = field(default_factory=list)
    timestamp: Optional[datetime] = None


class AuditLogService:
    """Append-only writer and read-only summaries for the audit tables."""

    def __init__(self, session_maker: async_sessionmaker):
        """Initialize audit log service.

        Args:
            session_maker: Session factory for the durable store
        """
        self._session_maker = session_maker
        self._pending: Set[asyncio.Task] = set()

    async def record_fetch(self, entry: FetchLogEntry) -> None:
        """Append a fetch outcome.

        Args:
            entry: Fetch log entry to write
        """
        row = FetchLog(
            status=entry.status,
            reason=entry.reason,
            source=entry.source,
            tokens=",".join(entry.tokens),
            token_count=len(entry.tokens),
            duration_ms=entry.duration_ms,
            error=entry.error,
            created_at=entry.timestamp or datetime.utcnow(),
        )
        try:
            async with self._session_maker() as session:
                session.add(row)
                await session.commit()
            logger.debug(f"Logged fetch outcome {entry.status} ({entry.reason})")
        except SQLAlchemyError as e:
            logger.error(f"Failed to log fetch outcome: {e}")

    async def record_api_call(self, entry: ApiCallEntry) -> None:
        """Append a served request outcome.

        Args:
            entry: API call entry to write
        """
        row = ApiCallMetric(
            endpoint=entry.endpoint,
            status=entry.status,
            response_time_ms=entry.response_time_ms,
            tokens_requested=",".join(entry.tokens),
            timestamp=entry.timestamp or datetime.utcnow(),
        )
        try:
            async with self._session_maker() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to log API call: {e}")

    def record_api_call_nowait(self, entry: ApiCallEntry) -> None:
        """Append a served request outcome in the background.

        The request that produced the entry never waits for the write.
        """
        task = asyncio.create_task(self.record_api_call(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def flush(self) -> None:
        """Wait for background writes scheduled so far."""
        while True:
            pending = [t for t in self._pending if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def api_metrics_summary(self, since: datetime) -> List[Dict[str, Any]]:
        """Outcome counts of served requests since ``since``, most frequent first."""
        query = (
            select(
                ApiCallMetric.status,
                func.count(ApiCallMetric.id).label("count"),
                func.avg(ApiCallMetric.response_time_ms).label("avg_response_time_ms"),
                func.max(ApiCallMetric.timestamp).label("last_occurrence"),
            )
            .where(ApiCallMetric.timestamp > since)
            .group_by(ApiCallMetric.status)
            .order_by(func.count(ApiCallMetric.id).desc())
        )
        async with self._session_maker() as session:
            result = await session.execute(query)
            rows = result.all()

        return [
            {
                "status": row.status,
                "count": row.count,
                "avg_response_time_ms": round(float(row.avg_response_time_ms or 0), 2),
                "last_occurrence": row.last_occurrence.isoformat() if row.last_occurrence else None,
            }
            for row in rows
        ]

    async def fetch_log_summary(self, since: datetime) -> Dict[str, int]:
        """Fetch outcome counts since ``since``."""
        query = (
            select(FetchLog.status, func.count(FetchLog.id))
            .where(FetchLog.created_at > since)
            .group_by(FetchLog.status)
        )
        async with self._session_maker() as session:
            result = await session.execute(query)
            return {status: count for status, count in result.all()}

    async def recent_fetches(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent fetch log entries, newest first."""
        query = select(FetchLog).order_by(FetchLog.created_at.desc(), FetchLog.id.desc()).limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [
            {
                "id": row.id,
                "status": row.status,
                "reason": row.reason,
                "source": row.source,
                "tokens": row.tokens.split(",") if row.tokens else [],
                "duration_ms": row.duration_ms,
                "error": row.error,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in rows
        ]


def metrics_window(hours: int, now: Optional[datetime] = None) -> datetime:
    """Start of a look-back window of ``hours``."""
    return (now or datetime.utcnow()) - timedelta(hours=hours)
