# tests/conftest.py
import os

# Settings são carregadas no import do pacote: o ambiente precisa vir antes
os.environ.update({
    "PROJECT_NAME": "Secretaria Test",
    "API_V1_STR": "/api/v1",
    "LOG_LEVEL": "DEBUG",
    "MONGODB_URI": "mongodb://localhost:27017/secretaria_test",
    "REDIS_URL": "redis://localhost:6379/1",
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
    "N8N_WEBHOOK_URL": "http://n8n.test/webhook/chat",
    "CHAT_BROADCAST_TIMEOUT_SECONDS": "1.0",
    "CHAT_BROADCAST_FLUSH_SECONDS": "0",
})
os.environ.pop("CHAT_PUBLISH_API_KEY", None)

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient
from typing import AsyncGenerator

from secretaria.core.database import get_database_or_none, get_redis_client_or_none
from secretaria.modules.chat.broadcast import BroadcastHub
from secretaria.modules.chat.repository import PendingResponseRepository

@pytest.fixture(scope="function")
def mongo_db():
    client = AsyncMongoMockClient()
    return client[f"test_db_{os.urandom(4).hex()}"]

@pytest.fixture(scope="function")
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()

@pytest.fixture(scope="function")
def redis_client(redis_server) -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)

@pytest.fixture(scope="function")
def store(mongo_db) -> PendingResponseRepository:
    return PendingResponseRepository(mongo_db)

@pytest.fixture(scope="function")
def hub(redis_client) -> BroadcastHub:
    return BroadcastHub(redis_client)

@pytest.fixture(scope="function")
def app(mongo_db, redis_client):
    from secretaria.main import create_app
    application = create_app(manage_connections=False)
    application.dependency_overrides[get_database_or_none] = lambda: mongo_db
    application.dependency_overrides[get_redis_client_or_none] = lambda: redis_client
    yield application
    application.dependency_overrides.clear()

@pytest_asyncio.fixture(scope="function")
async def test_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client
