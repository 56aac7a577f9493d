from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from headoffice.api.auth import create_access_token
from headoffice.api.branches import router as branches_router
from headoffice.api.error_handlers import register_error_handlers
from headoffice.api.migrations import router as migrations_router
from headoffice.config import settings
from headoffice.database import get_session
from headoffice.tenancy.context_factory import get_context_factory


@pytest.fixture
def admin_app(db_session: AsyncSession, branch_factory, monkeypatch):
    monkeypatch.setattr(settings, "auto_provision_branches", False)
    app = FastAPI()

    async def _override_session():
        yield db_session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_context_factory] = lambda: branch_factory
    app.include_router(branches_router)
    app.include_router(migrations_router)
    register_error_handlers(app)
    return app


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('ops@example.com', role='admin')}"}


@pytest.mark.asyncio
async def test_branch_routes_require_admin(admin_app):
    viewer = create_access_token("viewer@example.com", role="cashier")
    forged = jwt.encode({"sub": "x", "role": "admin"}, "wrong-secret", algorithm="HS256")

    transport = ASGITransport(app=admin_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        anonymous = await client.get("/api/v1/branches")
        wrong_role = await client.get("/api/v1/branches", headers={"Authorization": f"Bearer {viewer}"})
        bad_signature = await client.get("/api/v1/branches", headers={"Authorization": f"Bearer {forged}"})
        sweep = await client.post("/api/v1/migrations/branches/apply-all")

    assert anonymous.status_code == 401
    assert wrong_role.status_code == 403
    assert bad_signature.status_code == 401
    assert sweep.status_code == 401


@pytest.mark.asyncio
async def test_branch_lifecycle(admin_app, admin_headers, branch_factory):
    transport = ASGITransport(app=admin_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/api/v1/branches",
            headers=admin_headers,
            json={"code": "ruh01", "name_en": "Riyadh", "db_password": "secret"},
        )
        assert created.status_code == 201
        body = created.json()
        assert body["code"] == "RUH01"
        assert "db_password" not in body
        branch_id = body["id"]

        duplicate = await client.post(
            "/api/v1/branches", headers=admin_headers, json={"code": "RUH01", "name_en": "Again"}
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "BRANCH_CONFLICT"

        conn = await client.post(f"/api/v1/branches/{branch_id}/test-connection", headers=admin_headers)
        assert conn.status_code == 200
        assert conn.json()["success"] is True
        assert branch_id in branch_factory.cache

        patched = await client.patch(
            f"/api/v1/branches/{branch_id}",
            headers=admin_headers,
            json={"db_additional_params": "Mode=ReadWrite"},
        )
        assert patched.status_code == 200
        assert branch_id not in branch_factory.cache

        removed = await client.delete(f"/api/v1/branches/{branch_id}", headers=admin_headers)
        assert removed.status_code == 200
        assert removed.json()["is_active"] is False

        listed = await client.get("/api/v1/branches", headers=admin_headers)
        assert listed.json() == []

        missing = await client.get("/api/v1/branches/does-not-exist", headers=admin_headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "BRANCH_NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected(admin_app, admin_headers):
    transport = ASGITransport(app=admin_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        resp = await client.post(
            "/api/v1/branches",
            headers=admin_headers,
            json={"code": "../X", "name_en": "Bad", "database_provider": "oracle"},
        )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_cache_invalidate_endpoint(admin_app, admin_headers, branch_factory, make_branch):
    branch_factory.descriptor_for(make_branch(id="a", code="A1"))
    branch_factory.descriptor_for(make_branch(id="b", code="B1"))

    transport = ASGITransport(app=admin_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        one = await client.post("/api/v1/branches/cache/invalidate?branch_id=a", headers=admin_headers)
        everything = await client.post("/api/v1/branches/cache/invalidate", headers=admin_headers)

    assert one.json()["invalidated"] is True
    assert everything.json()["invalidated"] is True
    assert everything.json()["cache"]["entries"] == 0


@pytest.mark.asyncio
async def test_migration_endpoints(admin_app, admin_headers):
    transport = ASGITransport(app=admin_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/api/v1/branches", headers=admin_headers, json={"code": "DMM01", "name_en": "Dammam"}
        )
        branch_id = created.json()["id"]

        pending = await client.get(f"/api/v1/migrations/branches/{branch_id}/pending", headers=admin_headers)
        assert pending.json() == ["20251202_0001", "20251210_0002"]

        provisioned = await client.post(f"/api/v1/branches/{branch_id}/provision", headers=admin_headers)
        assert provisioned.json()["success"] is True
        assert provisioned.json()["applied_migrations"] == ["20251202_0001", "20251210_0002"]

        sweep = await client.post("/api/v1/migrations/branches/apply-all", headers=admin_headers)
        assert sweep.json()["success"] is True
        assert sweep.json()["branches_processed"] == 1

        valid = await client.get(f"/api/v1/migrations/branches/{branch_id}/validate", headers=admin_headers)
        assert valid.json() == {"branch_id": branch_id, "is_valid": True}

        history = await client.get(f"/api/v1/migrations/branches/{branch_id}/history", headers=admin_headers)
        assert history.json()["pending_migrations"] == []

        rollback = await client.post(f"/api/v1/migrations/branches/{branch_id}/rollback", headers=admin_headers)
        assert rollback.json()["applied_migrations"] == ["20251210_0002"]

        applied = await client.post(f"/api/v1/migrations/branches/{branch_id}/apply", headers=admin_headers)
        assert applied.json()["applied_migrations"] == ["20251210_0002"]

        status = await client.get("/api/v1/migrations/branches/status", headers=admin_headers)
        assert [s["branch_code"] for s in status.json()] == ["DMM01"]
        assert status.json()[0]["status"] == "completed"

        missing = await client.get("/api/v1/migrations/branches/nope/pending", headers=admin_headers)
        assert missing.status_code == 404
