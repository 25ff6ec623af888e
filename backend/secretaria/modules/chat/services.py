# secretaria/modules/chat/services.py

import asyncio
from dataclasses import dataclass, replace
from typing import Any, List, Optional

from fastapi import Depends
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.exceptions import BroadcastTransientError, DurablePersistenceError
from secretaria.core.logging_config import trace_id_var
from .broadcast import BroadcastHub, get_broadcast_hub
from .models import PendingResponseInDB, PublishResponsePayload, parse_publish_payload
from .repository import PendingResponseRepository, get_pending_response_repository

# Folga para enviar e liberar o canal depois da espera pela assinatura
BROADCAST_RELEASE_GRACE_SECONDS = 1.0

@dataclass
class BroadcastOutcome:
    attempted: bool = False
    sent: bool = False
    receivers: int = 0
    error: Optional[str] = None

@dataclass
class PublishOutcome:
    session_key: str
    text: str
    persisted: bool
    broadcast: BroadcastOutcome

class ChatDeliveryService:
    """
    Lado servidor do protocolo de entrega de respostas.

    ``publish`` grava a resposta no Response Store (caminho garantido) e tenta,
    de forma independente e com tempo limitado, empurrá-la pelo Broadcast Channel
    da sessão. Falha no broadcast nunca falha o publish.
    """

    def __init__(
        self,
        store: PendingResponseRepository,
        hub: BroadcastHub,
        broadcast_timeout: Optional[float] = None,
        flush_delay: Optional[float] = None,
        consume_on_read: Optional[bool] = None,
    ):
        self.store = store
        self.hub = hub
        self.broadcast_timeout = broadcast_timeout if broadcast_timeout is not None else settings.CHAT_BROADCAST_TIMEOUT_SECONDS
        self.flush_delay = flush_delay if flush_delay is not None else settings.CHAT_BROADCAST_FLUSH_SECONDS
        self.consume_on_read = consume_on_read if consume_on_read is not None else settings.CHAT_RESPONSE_CONSUME_ON_READ

    async def publish(self, body: Any) -> PublishOutcome:
        """
        Publica a resposta final de uma sessão pelos dois caminhos.

        Levanta PublishValidationError antes de qualquer efeito colateral e
        DurablePersistenceError (depois de tentar o broadcast) se a gravação falhar.
        """
        request: PublishResponsePayload = parse_publish_payload(body)
        session_key, text = request.session_key, request.text
        log = logger.bind(trace_id=trace_id_var.get(), session_key=session_key, service="ChatDelivery")
        log.info(f"Publishing AI response ({len(text)} chars)...")

        persistence_error: Optional[DurablePersistenceError] = None
        try:
            await self.store.save(session_key, text)
            log.debug("Durable write successful.")
        except DurablePersistenceError as e:
            # Sem essa gravação o polling do cliente nunca vai achar a resposta
            log.critical(f"Durable write FAILED, client will only get this reply via broadcast: {e}")
            persistence_error = e

        broadcast = await self.broadcast(session_key, text)

        if persistence_error is not None:
            raise persistence_error
        return PublishOutcome(session_key=session_key, text=text, persisted=True, broadcast=broadcast)

    @property
    def broadcast_deadline(self) -> float:
        return self.broadcast_timeout + self.flush_delay + BROADCAST_RELEASE_GRACE_SECONDS

    async def broadcast(self, session_key: str, text: str) -> BroadcastOutcome:
        """
        Best-effort: abre o canal, espera SUBSCRIBED, envia uma vez, libera. Nunca levanta.

        A tentativa inteira (inclusive liberar o canal) tem prazo: ``broadcast_deadline``.
        Cancelar o publish propaga CancelledError.
        """
        log = logger.bind(trace_id=trace_id_var.get(), session_key=session_key, service="ChatDelivery")
        outcome = BroadcastOutcome(attempted=True)
        attempt = asyncio.create_task(
            self._broadcast_once(session_key, text, outcome, log), name=f"broadcast:{session_key}"
        )
        try:
            done, _ = await asyncio.wait({attempt}, timeout=self.broadcast_deadline)
        except asyncio.CancelledError:
            attempt.cancel()
            raise
        if not done:
            attempt.cancel()
            outcome.error = outcome.error or f"Broadcast exceeded {self.broadcast_deadline:.1f}s"
            log.warning(f"Broadcast abandoned after {self.broadcast_deadline:.1f}s (poll fallback will cover it).")
        # Cópia: a task abandonada ainda pode mexer no original
        return replace(outcome)

    async def _broadcast_once(self, session_key: str, text: str, outcome: BroadcastOutcome, log):
        channel = self.hub.open(session_key)
        try:
            await channel.subscribe()
            if not await channel.wait_active(self.broadcast_timeout):
                raise BroadcastTransientError(f"Channel never reached SUBSCRIBED (state={channel.state.value})")
            outcome.receivers = await channel.send({"message": text})
            outcome.sent = True
            log.info(f"Broadcast sent to {outcome.receivers} subscriber(s).")
            if self.flush_delay:
                await asyncio.sleep(self.flush_delay)
        except BroadcastTransientError as e:
            outcome.error = str(e)
            log.warning(f"Broadcast not delivered (poll fallback will cover it): {e}")
        except Exception as e:
            outcome.error = str(e)
            log.exception(f"Unexpected broadcast error (poll fallback will cover it): {e}")
        finally:
            await channel.close()

    async def check_response(self, session_key: str) -> Optional[str]:
        """Interface de leitura do polling. Consome o registro quando configurado."""
        if self.consume_on_read:
            record = await self.store.consume(session_key)
        else:
            record = await self.store.get(session_key)
        if record and record.value:
            logger.bind(session_key=session_key).info(
                f"Pending response found via poll (consumed={self.consume_on_read})."
            )
            return record.value
        return None

    async def acknowledge(self, session_key: str) -> bool:
        """Cliente confirma que já exibiu a resposta (ex.: chegou por broadcast)."""
        deleted = await self.store.delete(session_key)
        logger.bind(session_key=session_key).debug(f"Acknowledge: deleted={deleted}")
        return deleted

    async def list_recent(self, limit: int = 10) -> List[PendingResponseInDB]:
        return await self.store.list_recent(limit=limit)

# Função de dependência
async def get_chat_delivery_service(
    store: PendingResponseRepository = Depends(get_pending_response_repository),
    hub: BroadcastHub = Depends(get_broadcast_hub),
) -> ChatDeliveryService:
    return ChatDeliveryService(store, hub)
