"""Price read and refresh trigger router."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..services.engine import PriceEngine, get_price_engine
from ..services.price_server import (
    PRICE_ENDPOINT,
    ServiceUnavailable,
    parse_currencies,
    parse_token_ids,
)
from ..services.audit_log import ApiCallEntry
from ..services.scheduler import KickResult

router = APIRouter()


class RefreshResponse(BaseModel):
    """Schema for manual refresh response."""
    status: str
    in_progress: bool
    next_attempt_seconds: int


@router.get("/v3/simple/price")
async def get_simple_price(
    ids: Optional[str] = Query(None, description="Comma-separated token ids"),
    vs_currencies: Optional[str] = Query(None, description="Comma-separated currencies (usd, ngn)"),
    engine: PriceEngine = Depends(get_price_engine),
):
    """Get cached prices, CoinGecko ``simple/price`` style."""
    token_ids = parse_token_ids(ids)
    if not token_ids:
        engine.audit_log.record_api_call_nowait(ApiCallEntry(
            endpoint=PRICE_ENDPOINT, status="bad_request", response_time_ms=0,
        ))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing ids parameter"
        )

    try:
        result = await engine.reader.get_prices(token_ids, parse_currencies(vs_currencies))
    except ServiceUnavailable as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            headers={"Retry-After": str(e.retry_after_seconds)},
            content={
                "error": "Service temporarily unavailable",
                "message": str(e),
                "next_retry_seconds": e.retry_after_seconds,
                "next_retry_minutes": e.retry_after_seconds // 60,
            },
        )

    headers = {
        "X-Price-Source": result.tier,
        "X-Emergency-Defaults": "true" if result.is_default else "false",
    }
    if result.freshness is not None:
        headers["X-Cache-Freshness"] = result.freshness.value
    if result.age_seconds is not None:
        headers["X-Cache-Age-Seconds"] = str(result.age_seconds)
    if result.missing:
        headers["X-Missing-Tokens"] = ",".join(result.missing)
    if result.refresh is not None:
        headers["X-Refresh"] = result.refresh.value

    return JSONResponse(content=result.prices, headers=headers)


@router.post("/refresh", response_model=RefreshResponse)
async def trigger_refresh(engine: PriceEngine = Depends(get_price_engine)):
    """Ask the scheduler for an immediate refresh without waiting for it."""
    result = engine.scheduler.trigger(reason="manual", force=True)
    return RefreshResponse(
        status=result.value,
        in_progress=result in (KickResult.STARTED, KickResult.IN_PROGRESS),
        next_attempt_seconds=engine.scheduler.next_attempt_in(),
    )
