# tests/modules/chat/test_automation_webhook.py
import json

import httpx
import pytest

from secretaria.core.exceptions import ClientSubmitError
from secretaria.modules.chat.submission import AutomationWebhookClient, build_upsert_envelope
from secretaria.modules.chat.tokens import encode_public_chat_token

pytestmark = pytest.mark.asyncio

def make_client(handler) -> AutomationWebhookClient:
    return AutomationWebhookClient(
        webhook_url="http://n8n.test/webhook/chat",
        timeout=1.0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

async def test_envelope_carries_session_and_tenant():
    envelope = build_upsert_envelope("chat-1", "Oi", tenant_id="0123456789abcdef", agent_name="Luna")
    message = envelope["data"]["messages"][0]
    assert envelope["event"] == "messages.upsert"
    assert message["key"]["remoteJid"] == "public_01234567_chat-1"
    assert message["key"]["fromMe"] is False
    assert message["pushName"] == "Acesso via Link"
    assert message["metadata"]["chatId"] == "chat-1"
    assert message["metadata"]["tenantId"] == "0123456789abcdef"
    assert message["metadata"]["agentName"] == "Luna"

async def test_forward_decodes_token_tenant():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(202)

    client = make_client(handler)
    await client.forward_user_message("chat-1", "Oi", token=encode_public_chat_token("tenant-xyz", "chat-1"))
    assert bodies[0]["data"]["messages"][0]["metadata"]["tenantId"] == "tenant-xyz"

async def test_forward_rejects_empty_text():
    client = make_client(lambda request: httpx.Response(200))
    with pytest.raises(ClientSubmitError) as exc_info:
        await client.forward_user_message("chat-1", "   ")
    assert exc_info.value.status_code == 400

async def test_forward_rejects_bad_token():
    client = make_client(lambda request: httpx.Response(200))
    with pytest.raises(ClientSubmitError) as exc_info:
        await client.forward_user_message("chat-1", "Oi", token="%%%")
    assert exc_info.value.status_code == 400

async def test_forward_maps_timeout_to_504():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ClientSubmitError) as exc_info:
        await make_client(handler).forward_user_message("chat-1", "Oi")
    assert exc_info.value.status_code == 504

async def test_forward_maps_connection_error_to_502():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ClientSubmitError) as exc_info:
        await make_client(handler).forward_user_message("chat-1", "Oi")
    assert exc_info.value.status_code == 502

async def test_forward_non_2xx_is_failure():
    client = make_client(lambda request: httpx.Response(404, json={"message": "workflow inactive"}))
    with pytest.raises(ClientSubmitError) as exc_info:
        await client.forward_user_message("chat-1", "Oi")
    assert exc_info.value.status_code == 502
