# tests/modules/chat/test_chat_api.py
import json

import httpx
import pytest
from fastapi import status
from httpx import AsyncClient

from secretaria.core.config import settings
from secretaria.modules.chat.submission import AutomationWebhookClient, get_automation_client

pytestmark = pytest.mark.asyncio

async def test_publish_success_stores_reply(test_client: AsyncClient, store):
    response = await test_client.post("/api/v1/chat/response", json={"chatId": "s1", "message": "=Hi there"})
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"success": True}
    assert (await store.get("s1")).value == "Hi there"
    assert response.headers.get("X-Trace-ID")

async def test_publish_accepts_alternate_field_names(test_client: AsyncClient, store):
    response = await test_client.post("/api/v1/chat/response", json={"sessionKey": "s2", "output": "Hello"})
    assert response.status_code == status.HTTP_200_OK
    assert (await store.get("s2")).value == "Hello"

@pytest.mark.parametrize("body", [
    {"chatId": "s1"},
    {"message": "Hi"},
    {"chatId": "s1", "message": "="},
    ["not", "an", "object"],
])
async def test_publish_validation_error(test_client: AsyncClient, store, body):
    response = await test_client.post("/api/v1/chat/response", json=body)
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "error" in response.json()
    assert await store.list_recent() == []

async def test_publish_invalid_json(test_client: AsyncClient):
    response = await test_client.post(
        "/api/v1/chat/response", content=b"{chatId: s1", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "Invalid JSON body"}

async def test_publish_durable_failure_returns_500(app, test_client: AsyncClient):
    from secretaria.core.database import get_database_or_none
    app.dependency_overrides[get_database_or_none] = lambda: None
    response = await test_client.post("/api/v1/chat/response", json={"chatId": "s1", "message": "Hi"})
    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "error" in response.json()

async def test_publish_succeeds_without_redis(app, test_client: AsyncClient, store):
    from secretaria.core.database import get_redis_client_or_none
    app.dependency_overrides[get_redis_client_or_none] = lambda: None
    response = await test_client.post("/api/v1/chat/response", json={"chatId": "s1", "message": "Hi"})
    assert response.status_code == status.HTTP_200_OK
    assert (await store.get("s1")).value == "Hi"

async def test_publish_api_key_enforced_when_configured(test_client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "CHAT_PUBLISH_API_KEY", "segredo")
    body = {"chatId": "s1", "message": "Hi"}

    response = await test_client.post("/api/v1/chat/response", json=body)
    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json() == {"error": "Invalid API key"}

    response = await test_client.post("/api/v1/chat/response", json=body, headers={"X-API-Key": "segredo"})
    assert response.status_code == status.HTTP_200_OK

async def test_poll_read_consumes_reply(test_client: AsyncClient, store):
    await store.save("s1", "Hi there")
    first = await test_client.get("/api/v1/chat/response/s1")
    assert first.json() == {"success": True, "message": "Hi there"}
    second = await test_client.get("/api/v1/chat/response/s1")
    assert second.json() == {"success": False}

async def test_acknowledge_deletes_reply(test_client: AsyncClient, store):
    await store.save("s1", "Hi there")
    response = await test_client.delete("/api/v1/chat/response/s1")
    assert response.json() == {"success": True, "deleted": True}
    response = await test_client.delete("/api/v1/chat/response/s1")
    assert response.json() == {"success": True, "deleted": False}

async def test_test_endpoint_runs_full_publish(test_client: AsyncClient, store):
    response = await test_client.get("/api/v1/chat/test", params={"chatId": "s9"})
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["success"] is True
    assert data["chatId"] == "s9"
    assert data["message"] == "Mensagem de teste!"
    assert data["dbWritten"] is True
    assert data["broadcastAttempted"] is True
    assert (await store.get("s9")).value == "Mensagem de teste!"

async def test_test_endpoint_requires_chat_id(test_client: AsyncClient):
    response = await test_client.get("/api/v1/chat/test")
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json() == {"error": "Missing chatId parameter"}

async def test_debug_lists_recent_truncated(test_client: AsyncClient, store):
    await store.save("short", "curta")
    await store.save("long", "x" * 80)
    response = await test_client.get("/api/v1/chat/debug")
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["count"] == 2
    values = {c["key"]: c["value"] for c in data["configs"]}
    assert values["chat_response_short"] == "curta"
    assert values["chat_response_long"] == "x" * 50 + "..."

def _override_webhook(app, handler):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_automation_client] = lambda: AutomationWebhookClient(
        webhook_url="http://n8n.test/webhook/chat", http_client=http_client
    )
    return http_client

async def test_submit_forwards_to_automation(app, test_client: AsyncClient):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    http_client = _override_webhook(app, handler)
    response = await test_client.post("/api/v1/chat/messages", json={"chatId": "s1", "message": "Oi"})
    await http_client.aclose()

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"success": True}
    assert captured["url"] == "http://n8n.test/webhook/chat"
    message = captured["body"]["data"]["messages"][0]
    assert captured["body"]["event"] == "messages.upsert"
    assert message["message"]["extendedTextMessage"]["text"] == "Oi"
    assert message["metadata"]["chatId"] == "s1"

async def test_submit_upstream_failure_returns_502(app, test_client: AsyncClient):
    http_client = _override_webhook(app, lambda request: httpx.Response(500, text="n8n down"))
    response = await test_client.post("/api/v1/chat/messages", json={"chatId": "s1", "message": "Oi"})
    await http_client.aclose()
    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert response.json() == {"error": "Erro na comunicação com a IA."}

async def test_submit_without_webhook_returns_503(app, test_client: AsyncClient):
    app.dependency_overrides[get_automation_client] = lambda: AutomationWebhookClient(webhook_url="")
    response = await test_client.post("/api/v1/chat/messages", json={"chatId": "s1", "message": "Oi"})
    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

async def test_submit_rejects_missing_fields(test_client: AsyncClient):
    response = await test_client.post("/api/v1/chat/messages", json={"chatId": "s1"})
    assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert response.json()["error"] == "Validation Error"
