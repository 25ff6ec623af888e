# tests/core/test_healthcheck.py
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi import status

from secretaria.core.database import get_database_or_none, get_redis_client_or_none
from secretaria.worker.celery_app import celery_app

pytestmark = pytest.mark.asyncio

@pytest.fixture
def celery_ping(monkeypatch):
    inspector = MagicMock()
    inspector.ping.return_value = {"worker@host": {"ok": "pong"}}
    monkeypatch.setattr(celery_app.control, "inspect", MagicMock(return_value=inspector))
    return inspector

@pytest.fixture
def pingable_db(app):
    db = MagicMock()
    db.command = AsyncMock(return_value={"ok": 1})
    app.dependency_overrides[get_database_or_none] = lambda: db
    return db

async def test_healthcheck_all_ok(test_client, pingable_db, celery_ping):
    response = await test_client.get("/api/v1/healthcheck")
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["overall_status"] == "ok"
    assert data["components"]["response_store_mongodb"]["status"] == "ok"
    assert data["components"]["broadcast_redis"]["status"] == "ok"
    assert data["components"]["celery_workers"]["status"] == "ok"

async def test_healthcheck_degraded_without_redis(app, test_client, pingable_db, celery_ping):
    app.dependency_overrides[get_redis_client_or_none] = lambda: None
    response = await test_client.get("/api/v1/healthcheck")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["overall_status"] == "degraded"

async def test_healthcheck_fails_without_database(app, test_client, celery_ping):
    app.dependency_overrides[get_database_or_none] = lambda: None
    response = await test_client.get("/api/v1/healthcheck")
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    data = response.json()
    assert data["overall_status"] == "error"
    assert data["components"]["response_store_mongodb"]["status"] == "error"
