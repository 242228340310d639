"""Read-only observability router for the durable tier and audit trails."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..services.audit_log import metrics_window
from ..services.engine import PriceEngine, get_price_engine

router = APIRouter()


class CachedTokenResponse(BaseModel):
    """Schema for one cached token."""
    token_id: str
    usd_price: Optional[float]
    ngn_price: Optional[float]
    ngn_price_before_margin: Optional[float]
    source: str
    last_updated: datetime
    age_minutes: int


class DatabaseStatsResponse(BaseModel):
    """Schema for durable tier statistics."""
    total_tokens: int
    tokens: List[CachedTokenResponse]
    memory_cache_count: int


class MetricsResponse(BaseModel):
    """Schema for audit trail summaries."""
    window_hours: int
    api_calls: List[Dict[str, Any]]
    fetch_outcomes: Dict[str, int]
    total_fetch_attempts: int


@router.get("/stats", response_model=DatabaseStatsResponse)
async def get_database_stats(engine: PriceEngine = Depends(get_price_engine)):
    """List every token in the durable tier, newest first."""
    records = await engine.cache_store.read_durable()
    now = datetime.utcnow()
    tokens = sorted(records.values(), key=lambda r: r.last_updated, reverse=True)

    return DatabaseStatsResponse(
        total_tokens=len(tokens),
        tokens=[
            CachedTokenResponse(
                token_id=r.token_id,
                usd_price=r.usd_price,
                ngn_price=r.ngn_price,
                ngn_price_before_margin=r.ngn_price_before_margin,
                source=r.source,
                last_updated=r.last_updated,
                age_minutes=max(int((now - r.last_updated).total_seconds() // 60), 0),
            )
            for r in tokens
        ],
        memory_cache_count=len(engine.state.prices),
    )


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(
    hours: int = Query(24, ge=1, le=24 * 30),
    engine: PriceEngine = Depends(get_price_engine),
):
    """Outcome counts of served requests and fetch campaigns."""
    since = metrics_window(hours)
    return MetricsResponse(
        window_hours=hours,
        api_calls=await engine.audit_log.api_metrics_summary(since),
        fetch_outcomes=await engine.audit_log.fetch_log_summary(since),
        total_fetch_attempts=engine.state.fetch_attempts,
    )


@router.get("/fetch-log")
async def get_fetch_log(
    limit: int = Query(50, ge=1, le=500),
    engine: PriceEngine = Depends(get_price_engine),
):
    """Most recent fetch campaign outcomes."""
    return await engine.audit_log.recent_fetches(limit)
