# secretaria/modules/chat/submission.py

import json
import time
import uuid
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.exceptions import ClientSubmitError
from secretaria.core.logging_config import trace_id_var
from .tokens import decode_public_chat_token

PUBLIC_PUSH_NAME = "Acesso via Link"

def build_upsert_envelope(
    session_key: str,
    text: str,
    tenant_id: Optional[str] = None,
    agent_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Monta o corpo no formato ``messages.upsert`` do gateway de WhatsApp.

    A automação trata a mensagem do chat como se viesse do WhatsApp; os campos de
    ``metadata`` dizem que é um chat de teste e qual sessão deve receber a resposta.
    """
    tenant_tag = (tenant_id or "public")[:8]
    return {
        "event": "messages.upsert",
        "instance": f"preview_{tenant_id or 'public'}",
        "data": {
            "messages": [{
                "key": {
                    "remoteJid": f"public_{tenant_tag}_{session_key}",
                    "fromMe": False,
                    "id": str(uuid.uuid4()),
                },
                "pushName": PUBLIC_PUSH_NAME,
                "message": {"extendedTextMessage": {"text": text}},
                "messageTimestamp": int(time.time()),
                "metadata": {
                    "preview": True,
                    "chatApp": True,
                    "chatId": session_key,
                    "tenantId": tenant_id,
                    "agentName": agent_name or settings.ASSISTANT_NAME,
                },
            }]
        },
    }

class AutomationWebhookClient:
    """Encaminha a mensagem do usuário para o webhook da automação (n8n)."""

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.N8N_WEBHOOK_URL
        self.timeout = timeout or settings.CHAT_SUBMIT_TIMEOUT_SECONDS
        self._http_client = http_client

    async def forward_user_message(self, session_key: str, text: str, token: Optional[str] = None) -> None:
        """
        Envia a mensagem. A resposta da IA NÃO volta aqui: chega depois pelo publish.

        Levanta ClientSubmitError com o status HTTP sugerido para o cliente.
        """
        log = logger.bind(trace_id=trace_id_var.get(), session_key=session_key, service="AutomationWebhook")

        if not text or not text.strip():
            raise ClientSubmitError("Mensagem vazia.", status_code=400)

        tenant_id = None
        if token:
            try:
                tenant_id = decode_public_chat_token(token).tenant_id
            except ValueError as e:
                log.warning(f"Rejected submission with invalid chat token: {e}")
                raise ClientSubmitError(str(e), status_code=400) from e

        if not self.webhook_url:
            log.critical("N8N_WEBHOOK_URL missing. Cannot forward chat message.")
            raise ClientSubmitError("Chat temporariamente indisponível (Erro de configuração).", status_code=503)

        payload = build_upsert_envelope(session_key, text, tenant_id=tenant_id)
        log.info("Forwarding user message to automation webhook...")

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
        except httpx.TimeoutException as e:
            log.error("Timeout forwarding chat message to automation webhook.")
            raise ClientSubmitError("A IA demorou para responder ao envio. Tente novamente.", status_code=504) from e
        except httpx.RequestError as e:
            log.error(f"HTTP request error forwarding chat message: {e}")
            raise ClientSubmitError("Erro na comunicação com a IA.", status_code=502) from e

        if not (200 <= response.status_code < 300):
            snippet = response.text[:300]
            try:
                snippet = json.dumps(response.json())[:300]
            except (json.JSONDecodeError, ValueError):
                pass
            log.error(f"Automation webhook rejected message. Status={response.status_code} Body='{snippet}'")
            raise ClientSubmitError("Erro na comunicação com a IA.", status_code=502)

        log.success("User message accepted by automation webhook.")

async def get_automation_client() -> AutomationWebhookClient:
    return AutomationWebhookClient()
