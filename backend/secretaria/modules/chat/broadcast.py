# secretaria/modules/chat/broadcast.py

import asyncio
import inspect
import json
import uuid
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

import redis.asyncio as redis
from fastapi import Depends, WebSocket
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.database import get_redis_client_or_none
from secretaria.core.exceptions import BroadcastTransientError

MessageHandler = Callable[[Dict[str, Any]], Union[Awaitable[None], None]]

class ChannelState(str, Enum):
    CLOSED = "CLOSED"
    JOINING = "JOINING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"

class BroadcastChannel:
    """
    Tópico pub/sub de uma sessão (Redis).

    Só entrega mensagens publicadas DEPOIS da confirmação de assinatura: não há
    backlog nem replay. ``send`` exige o estado SUBSCRIBED, então quem publica
    também assina e espera ``wait_active`` antes de enviar. O próprio remetente
    não recebe o que envia.

    Sem ``on_message`` o canal só publica: não sobe task de escuta e a
    confirmação é lida dentro de ``wait_active``. Com ``pattern=True`` o tópico
    é um glob (``chat_*``) e cada envelope entregue ganha a chave ``topic``.

    Envelope no fio::

        {"type": "broadcast", "event": "ai-response", "payload": {...}, "sender": "<id>"}
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        topic: str,
        event: str,
        read_timeout: float = 1.0,
        pattern: bool = False,
    ):
        self.redis = redis_client
        self.topic = topic
        self.event = event
        self.read_timeout = read_timeout
        self.pattern = pattern
        self.sender_id = uuid.uuid4().hex
        self._state = ChannelState.CLOSED
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._handler: Optional[MessageHandler] = None
        self._settled = asyncio.Event()
        self._started = False
        self._closed = False
        self.log = logger.bind(channel=topic, service="BroadcastChannel")

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == ChannelState.SUBSCRIBED

    def _set_state(self, state: ChannelState):
        if state != self._state:
            self.log.debug(f"Channel status: {state.value}")
        self._state = state
        if state in (ChannelState.SUBSCRIBED, ChannelState.CHANNEL_ERROR):
            self._settled.set()

    async def __aenter__(self) -> "BroadcastChannel":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def subscribe(self, on_message: Optional[MessageHandler] = None) -> "BroadcastChannel":
        """
        Inicia a assinatura e devolve imediatamente.

        Falhas não levantam exceção: o canal vai para CHANNEL_ERROR e
        ``wait_active`` devolve False.
        """
        if self._closed:
            raise BroadcastTransientError(f"Channel {self.topic} already closed")
        if self._started:
            return self
        self._started = True
        self._handler = on_message

        if self.redis is None:
            self.log.warning("Redis not available; channel cannot be joined.")
            self._set_state(ChannelState.CHANNEL_ERROR)
            return self

        self._set_state(ChannelState.JOINING)
        try:
            self._pubsub = self.redis.pubsub()
            if self.pattern:
                await self._pubsub.psubscribe(self.topic)
            else:
                await self._pubsub.subscribe(self.topic)
        except Exception as e:
            self.log.warning(f"Channel subscription error: {e}")
            self._set_state(ChannelState.CHANNEL_ERROR)
            return self

        if on_message is not None:
            self._listener = asyncio.create_task(self._listen(), name=f"broadcast-listener:{self.topic}")
        return self

    async def wait_active(self, timeout: float) -> bool:
        """Espera a confirmação da assinatura. False em erro ou timeout."""
        if self._state == ChannelState.SUBSCRIBED:
            return True
        if self._state in (ChannelState.CLOSED, ChannelState.CHANNEL_ERROR):
            return False

        if self._listener is None and self._pubsub is not None:
            await self._confirm_inline(timeout)
        else:
            try:
                await asyncio.wait_for(self._settled.wait(), timeout)
            except asyncio.TimeoutError:
                pass

        if self._state == ChannelState.SUBSCRIBED:
            return True
        if self._state == ChannelState.JOINING:
            self.log.warning(f"Channel subscription timeout after {timeout:.2f}s")
            self._set_state(ChannelState.TIMED_OUT)
        return False

    async def _confirm_inline(self, timeout: float):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._state == ChannelState.JOINING:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=False, timeout=min(remaining, self.read_timeout)
                )
            except Exception as e:
                self.log.warning(f"Channel confirmation error: {e}")
                self._set_state(ChannelState.CHANNEL_ERROR)
                return
            if message and message.get("type") in ("subscribe", "psubscribe"):
                self._set_state(ChannelState.SUBSCRIBED)

    async def send(self, payload: Dict[str, Any]) -> int:
        """Publica um evento. Devolve quantos OUTROS assinantes o receberam."""
        if self._state != ChannelState.SUBSCRIBED or self.pattern:
            raise BroadcastTransientError(f"Channel {self.topic} is not subscribed (state={self._state.value})")
        envelope = {"type": "broadcast", "event": self.event, "payload": payload, "sender": self.sender_id}
        try:
            receivers = await self.redis.publish(self.topic, json.dumps(envelope, ensure_ascii=False))
        except Exception as e:
            raise BroadcastTransientError(f"Broadcast send failed on {self.topic}: {e}") from e
        # O próprio canal está assinado e entra na contagem do PUBLISH
        return max(0, int(receivers) - 1)

    async def close(self):
        """
        Libera a assinatura e a conexão. Idempotente.

        Cada espera aqui é limitada por ``read_timeout``: um ``get_message`` que
        não larga o cancelamento não segura quem está fechando. Cancelar quem
        chamou ``close`` continua propagando CancelledError normalmente.
        """
        if self._closed:
            return
        self._closed = True

        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            done, _ = await asyncio.wait({listener}, timeout=self.read_timeout)
            if not done:
                self.log.warning("Broadcast listener did not stop in time; releasing channel anyway.")

        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            release = asyncio.create_task(self._release(pubsub), name=f"broadcast-release:{self.topic}")
            done, _ = await asyncio.wait({release}, timeout=self.read_timeout)
            if not done:
                release.cancel()
                self.log.warning("Timed out releasing pub/sub connection.")

        self._set_state(ChannelState.CLOSED)

    async def _release(self, pubsub):
        try:
            if self.pattern:
                await pubsub.punsubscribe(self.topic)
            else:
                await pubsub.unsubscribe(self.topic)
            await pubsub.aclose()
        except Exception as e:
            self.log.debug(f"Ignoring error while releasing channel: {e}")

    async def _listen(self):
        try:
            # Checa _closed a cada volta: o cancelamento pode virar um timeout dentro do get_message
            while not self._closed:
                message = await self._pubsub.get_message(ignore_subscribe_messages=False, timeout=self.read_timeout)
                if message is None:
                    continue
                mtype = message.get("type")
                if mtype in ("subscribe", "psubscribe"):
                    self._set_state(ChannelState.SUBSCRIBED)
                elif mtype in ("message", "pmessage"):
                    await self._dispatch(message.get("data"), message.get("channel"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log.warning(f"Broadcast listener stopped: {e}")
            self._set_state(ChannelState.CHANNEL_ERROR)

    async def _dispatch(self, data: Any, channel: Any = None):
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="replace")
        try:
            envelope = json.loads(data)
        except (TypeError, json.JSONDecodeError) as e:
            self.log.error(f"JSON decode error on broadcast: {e} ({str(data)[:200]!r})")
            return
        if not isinstance(envelope, dict) or envelope.get("event") != self.event:
            return
        if envelope.get("sender") == self.sender_id or self._handler is None:
            return
        if self.pattern:
            if isinstance(channel, (bytes, bytearray)):
                channel = channel.decode("utf-8", errors="replace")
            envelope["topic"] = channel
        try:
            result = self._handler(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.log.error(f"on_message handler error: {e}")

class BroadcastHub:
    """Fábrica de canais por sessão: ``chat_<sessionKey>``."""

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        channel_prefix: Optional[str] = None,
        event: Optional[str] = None,
    ):
        self.redis = redis_client
        self.channel_prefix = channel_prefix if channel_prefix is not None else settings.CHAT_CHANNEL_PREFIX
        self.event = event or settings.CHAT_BROADCAST_EVENT

    @property
    def available(self) -> bool:
        return self.redis is not None

    def topic_for(self, session_key: str) -> str:
        return f"{self.channel_prefix}{session_key}"

    def open(self, session_key: str) -> BroadcastChannel:
        return BroadcastChannel(self.redis, self.topic_for(session_key), self.event)

    def open_pattern(self) -> BroadcastChannel:
        """Um canal que escuta TODAS as sessões (``<prefixo>*``)."""
        return BroadcastChannel(self.redis, f"{self.channel_prefix}*", self.event, pattern=True)

class BroadcastRelay:
    """
    Uma assinatura por padrão por processo, repartida entre as pontes WebSocket locais.

    Sem isso cada aba de chat aberta prenderia uma conexão pub/sub do pool.
    Aqui o processo segura uma só (``psubscribe chat_*``) e entrega cada
    envelope aos handlers registrados para aquela sessão.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis],
        channel_prefix: Optional[str] = None,
        event: Optional[str] = None,
    ):
        self.hub = BroadcastHub(redis_client, channel_prefix, event)
        self._channel: Optional[BroadcastChannel] = None
        self._routes: Dict[str, Set[MessageHandler]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self.log = logger.bind(service="BroadcastRelay")

    @property
    def state(self) -> ChannelState:
        return self._channel.state if self._channel is not None else ChannelState.CLOSED

    @property
    def listeners(self) -> int:
        return sum(len(handlers) for handlers in self._routes.values())

    async def _ensure_channel(self) -> BroadcastChannel:
        async with self._lock:
            channel = self._channel
            if channel is None or channel.state in (ChannelState.CHANNEL_ERROR, ChannelState.CLOSED):
                if channel is not None:
                    await channel.close()
                channel = self.hub.open_pattern()
                self._channel = channel
                await channel.subscribe(self._route)
            return channel

    async def register(self, session_key: str, handler: MessageHandler, timeout: float) -> bool:
        """Passa a entregar os envelopes da sessão ao handler. True se a assinatura está ativa."""
        channel = await self._ensure_channel()
        self._routes[self.hub.topic_for(session_key)].add(handler)
        return await channel.wait_active(timeout)

    def unregister(self, session_key: str, handler: MessageHandler):
        topic = self.hub.topic_for(session_key)
        handlers = self._routes.get(topic)
        if handlers is None:
            return
        handlers.discard(handler)
        if not handlers:
            del self._routes[topic]

    async def _route(self, envelope: Dict[str, Any]):
        topic = envelope.pop("topic", None)
        handlers = list(self._routes.get(topic, ()))
        if not handlers:
            return
        results = await asyncio.gather(*(self._call(h, dict(envelope)) for h in handlers), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self.log.bind(channel=topic).error(f"Relay handler error: {result}")

    @staticmethod
    async def _call(handler: MessageHandler, envelope: Dict[str, Any]):
        result = handler(envelope)
        if inspect.isawaitable(result):
            await result

    async def close(self):
        self._routes.clear()
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

# Funções de dependência FastAPI
async def get_broadcast_hub(
    redis_client: Optional[redis.Redis] = Depends(get_redis_client_or_none),
) -> BroadcastHub:
    return BroadcastHub(redis_client)

async def get_broadcast_relay(
    websocket: WebSocket,
    redis_client: Optional[redis.Redis] = Depends(get_redis_client_or_none),
) -> BroadcastRelay:
    # Normalmente criado no lifespan; sem ele, o primeiro WebSocket cria
    relay = getattr(websocket.app.state, "broadcast_relay", None)
    if relay is None:
        relay = BroadcastRelay(redis_client)
        websocket.app.state.broadcast_relay = relay
    return relay
