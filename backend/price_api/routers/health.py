"""Health check router."""

from fastapi import APIRouter, Depends

from ..services.engine import PriceEngine, get_price_engine

router = APIRouter()


@router.get("/health")
async def health_check(engine: PriceEngine = Depends(get_price_engine)):
    """Health check endpoint with cache and scheduler status."""
    return {
        "status": "ok",
        "service": "paycrypt-price-api",
        "version": "1.0.0",
        **engine.health(),
    }
