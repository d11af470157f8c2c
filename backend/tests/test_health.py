"""
Tests for health check endpoints.
"""
import pytest


@pytest.mark.asyncio
async def test_health_reports_database(client):
    """The in-memory database answers SELECT 1."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "healthy"


@pytest.mark.asyncio
async def test_health_reports_scheduler(client):
    """Scheduler is not started under the test client."""
    response = await client.get("/health")

    assert response.json()["scheduler"] == {"running": False, "jobs": []}


@pytest.mark.asyncio
async def test_ping(client):
    response = await client.get("/ping")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"status": "ok"}
