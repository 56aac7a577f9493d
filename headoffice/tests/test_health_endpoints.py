from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from headoffice import main
from headoffice.config import settings


async def _ready() -> bool:
    return True


async def _not_ready() -> bool:
    return False


@pytest.mark.asyncio
async def test_health_and_metrics(monkeypatch):
    monkeypatch.setattr(main, "_db_ready", _ready)

    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        live = await client.get("/api/health/live", headers={"x-request-id": "req-123"})
        health = await client.get("/api/health")
        metrics = await client.get("/api/metrics")

    assert live.json() == {"status": "alive", "service": "headoffice"}
    assert live.headers["X-Request-ID"] == "req-123"
    assert live.headers["X-Frame-Options"] == "DENY"
    assert health.json()["status"] == "healthy"
    assert health.json()["database_ready"] is True
    assert metrics.json()["metrics"]["path_counts"]["/api/health/live"] >= 1


@pytest.mark.asyncio
async def test_readiness_reports_unavailable_database(monkeypatch):
    monkeypatch.setattr(main, "_db_ready", _not_ready)
    monkeypatch.setattr(settings, "migration_sweep_enabled", False)

    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/health/ready")

    assert resp.status_code == 503
    assert resp.json()["checks"] == {"database": False, "migration_sweep": True}


@pytest.mark.asyncio
async def test_admin_routes_are_mounted_and_guarded():
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.get("/api/v1/branches")

    assert resp.status_code == 401
