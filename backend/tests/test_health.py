"""Tests for health and service description endpoints."""

import pytest

from price_api.services.providers.base import Quote


@pytest.mark.asyncio
async def test_health_check(client):
    """Test health endpoint returns OK."""
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["margin"] == "+20 NGN"
    assert data["cache"]["cache_status"] == "empty"
    assert data["scheduler"]["state"] == "idle"
    assert data["exchange_rate"]["fallback_rate"] == 1500.0


@pytest.mark.asyncio
async def test_health_after_refresh(client, engine, fetcher):
    """Test health reflects a completed refresh."""
    fetcher.succeed({"tether": Quote(usd=1.0, ngn=1500.0)})
    await engine.scheduler.refresh()

    data = (await client.get("/api/health")).json()

    assert data["cache"]["cache_status"] == "has_data"
    assert data["cache"]["memory_tokens"] == ["tether"]
    assert data["cache"]["freshness"] == "fresh"
    assert data["scheduler"]["fetch_attempts"] == 1


@pytest.mark.asyncio
async def test_root_describes_service(client):
    """Test root endpoint describes usage."""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "PayCrypt Price API"
    assert data["usage"].startswith("/api/v3/simple/price")
