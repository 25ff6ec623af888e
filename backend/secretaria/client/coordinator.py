# secretaria/client/coordinator.py

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import List, Optional, Set, Tuple

from loguru import logger

from secretaria.core.config import settings
from secretaria.core.exceptions import ClientSubmitError
from secretaria.modules.chat.tokens import new_session_key
from .transport import DeliveryTransport, Subscription

class RequestState(str, Enum):
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"
    DELIVERED = "delivered"

@dataclass(frozen=True)
class TranscriptEntry:
    role: str  # "user" | "ai"
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_error: bool = False

@dataclass(eq=False)
class _Request:
    token: str
    session_key: str
    delivered: bool = False
    finished: bool = False  # erro de envio, expirou ou cancelado
    reply: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event)

class DeliveryCoordinator:
    """
    Lado cliente do chat: garante que cada mensagem enviada renderize UMA resposta.

    Dois caminhos correm em paralelo: a assinatura realtime (vive a sessão inteira)
    e o polling do Response Store (só enquanto há pedido pendente). Quem chegar
    primeiro entrega; o outro vira no-op pela checagem de ``delivered`` e do token
    do pedido. ``reset()`` troca a sessão e descarta qualquer entrega atrasada.

    Uso::

        async with DeliveryCoordinator(HttpChatTransport(url)) as chat:
            reply = await chat.ask("Qual o horário de atendimento?")
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        session_key: Optional[str] = None,
        poll_interval: Optional[float] = None,
        poll_max_attempts: Optional[int] = None,
        greeting: Optional[str] = None,
    ):
        self.transport = transport
        self.poll_interval = poll_interval if poll_interval is not None else settings.CHAT_POLL_INTERVAL_SECONDS
        self.poll_max_attempts = poll_max_attempts or settings.CHAT_POLL_MAX_ATTEMPTS
        self.greeting = greeting if greeting is not None else settings.CHAT_GREETING

        self._session_key = session_key or new_session_key()
        self._transcript: List[TranscriptEntry] = []
        self._request: Optional[_Request] = None
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._submit_task: Optional[asyncio.Task] = None
        self._sending: Optional[object] = None  # send() entre a checagem e a criação do pedido
        self._ack_tasks: Set[asyncio.Task] = set()
        self._opened = False
        self._start_transcript()

    # --- Estado público ---

    @property
    def session_key(self) -> str:
        return self._session_key

    @property
    def state(self) -> RequestState:
        if self._sending is not None:
            return RequestState.AWAITING_REPLY
        request = self._request
        if request is None or request.finished:
            return RequestState.IDLE
        if request.delivered:
            return RequestState.DELIVERED
        return RequestState.AWAITING_REPLY

    @property
    def transcript(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._transcript)

    @property
    def log(self):
        return logger.bind(session_key=self._session_key, service="DeliveryCoordinator")

    async def __aenter__(self) -> "DeliveryCoordinator":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # --- Ciclo de vida da sessão ---

    async def open(self):
        """Abre a assinatura realtime da sessão atual."""
        if self._opened:
            return
        self._opened = True
        await self._subscribe()

    async def wait_subscribed(self, timeout: float) -> bool:
        """True quando a assinatura realtime confirmou; False se não há assinatura ou deu timeout."""
        subscription = self._subscription
        if subscription is None:
            return False
        return await subscription.wait_active(timeout)

    async def reset(self):
        """Nova sessão: abandona o pedido pendente e a assinatura antiga."""
        self.cancel()
        await self._unsubscribe()
        old_key = self._session_key
        self._session_key = new_session_key()
        self._start_transcript()
        self.log.info(f"Session reset (previous={old_key}).")
        if self._opened:
            await self._subscribe()

    async def close(self):
        self.cancel()
        await self._unsubscribe()
        if self._ack_tasks:
            await asyncio.gather(*self._ack_tasks, return_exceptions=True)
        self._opened = False

    # --- Pedidos ---

    async def send(self, text: str) -> bool:
        """
        Envia a mensagem do usuário e arma os dois caminhos de entrega.

        Não espera a resposta (use ``wait_for_reply`` ou ``ask``). Devolve False
        quando o envio falhou: nesse caso a bolha de erro já está no transcript.
        """
        text = (text or "").strip()
        if not text:
            return False
        if self.state == RequestState.AWAITING_REPLY:
            raise RuntimeError("A message is already awaiting its reply.")

        # Marca antes do primeiro await: um segundo send() concorrente cai no RuntimeError acima
        marker = self._sending = object()
        try:
            session_key = self._session_key
            self._append("user", text)
            # Resposta já exibida via broadcast e ainda não confirmada não pode ser pega por este pedido
            await self._discard_leftover(session_key)
            if self._sending is not marker or session_key != self._session_key:
                return False

            request = _Request(token=uuid.uuid4().hex, session_key=session_key)
            self._stop_polling()
            self._request = request
            self._poll_task = asyncio.create_task(self._poll_loop(request), name=f"chat-poll:{request.token}")
        finally:
            if self._sending is marker:
                self._sending = None

        submit_task = asyncio.create_task(self.transport.submit(request.session_key, text))
        self._submit_task = submit_task
        try:
            await submit_task
        except asyncio.CancelledError:
            if self._request is not request:
                # cancel()/reset() interromperam o envio
                return False
            self._abandon(request)
            raise
        except ClientSubmitError as e:
            if self._request is not request or request.delivered:
                return False
            self.log.warning(f"Message submission failed: {e}")
            self._stop_polling()
            request.finished = True
            request.done.set()
            self._append("ai", f"⚠️ {e}", is_error=True)
            return False
        finally:
            if self._submit_task is submit_task:
                self._submit_task = None

        self.log.info("Message submitted. Awaiting reply via broadcast or poll.")
        return True

    async def wait_for_reply(self, timeout: Optional[float] = None) -> Optional[str]:
        """Espera o desfecho do pedido atual. None se falhou, expirou, foi cancelado ou deu timeout."""
        request = self._request
        if request is None:
            return None
        try:
            await asyncio.wait_for(request.done.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return request.reply

    async def ask(self, text: str, timeout: Optional[float] = None) -> Optional[str]:
        if not await self.send(text):
            return None
        return await self.wait_for_reply(timeout)

    def cancel(self):
        """Abandona o pedido atual. Sinais atrasados dele passam a ser ignorados."""
        request, self._request = self._request, None
        self._sending = None
        self._stop_polling()
        if self._submit_task is not None:
            self._submit_task.cancel()
            self._submit_task = None
        if request is not None and not request.finished and not request.delivered:
            request.finished = True
            request.done.set()
            self.log.info("Pending request cancelled.")

    # --- Caminhos de entrega ---

    def _on_broadcast(self, session_key: str, text: str):
        request = self._request
        if session_key != self._session_key or request is None or request.session_key != session_key:
            self.log.debug("Dropping broadcast for an abandoned session.")
            return
        if self._deliver(request, text, path="broadcast"):
            self._schedule_acknowledge(session_key)

    async def _poll_loop(self, request: _Request):
        for attempt in range(1, self.poll_max_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            if self._request is not request or request.delivered or request.finished:
                return
            try:
                reply = await self.transport.check_response(request.session_key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.warning(f"Poll attempt {attempt} failed: {e}")
                continue
            if reply:
                self._deliver(request, reply, path="poll")
                return

        if self._request is request and not request.delivered and not request.finished:
            self.log.warning(f"No reply after {self.poll_max_attempts} polls; giving up on this request.")
            request.finished = True
            request.done.set()

    def _deliver(self, request: _Request, text: str, path: str) -> bool:
        # Sem await aqui: checagem e marcação são atômicas no event loop
        if self._request is not request or request.delivered or request.finished:
            self.log.debug(f"Stale {path} delivery discarded.")
            return False
        request.delivered = True
        request.reply = text
        self._append("ai", text)
        self._stop_polling()
        request.done.set()
        self.log.info(f"Reply delivered via {path}.")
        return True

    def _stop_polling(self):
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _abandon(self, request: _Request):
        if self._request is request:
            self.cancel()

    def _schedule_acknowledge(self, session_key: str):
        task = asyncio.create_task(self._discard_leftover(session_key))
        self._ack_tasks.add(task)
        task.add_done_callback(self._ack_tasks.discard)

    async def _discard_leftover(self, session_key: str):
        try:
            await self.transport.acknowledge(session_key)
        except Exception as e:
            self.log.debug(f"Acknowledge failed (sweep will clean it up): {e}")

    # --- Assinatura / transcript ---

    async def _subscribe(self):
        try:
            self._subscription = await self.transport.subscribe(
                self._session_key, partial(self._on_broadcast, self._session_key)
            )
        except Exception as e:
            self._subscription = None
            self.log.warning(f"Realtime subscription unavailable, relying on polling: {e}")

    async def _unsubscribe(self):
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as e:
                self.log.debug(f"Error closing subscription: {e}")

    def _start_transcript(self):
        self._transcript = [TranscriptEntry(role="ai", text=self.greeting)] if self.greeting else []

    def _append(self, role: str, text: str, is_error: bool = False):
        self._transcript.append(TranscriptEntry(role=role, text=text, is_error=is_error))
