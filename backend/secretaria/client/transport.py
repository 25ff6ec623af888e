# secretaria/client/transport.py

import asyncio
import json
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
import websockets
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.exceptions import ClientSubmitError

ReplyHandler = Callable[[str], None]

class Subscription(Protocol):
    @property
    def active(self) -> bool: ...

    async def wait_active(self, timeout: float) -> bool: ...

    async def close(self) -> None: ...

class DeliveryTransport(Protocol):
    """O que o DeliveryCoordinator precisa do mundo externo."""

    async def submit(self, session_key: str, text: str) -> None:
        """Envia a mensagem do usuário. Levanta ClientSubmitError em falha."""
        ...

    async def check_response(self, session_key: str) -> Optional[str]: ...

    async def acknowledge(self, session_key: str) -> bool: ...

    async def subscribe(self, session_key: str, on_reply: ReplyHandler) -> Subscription: ...

class ChatApiClient:
    """Cliente HTTP (httpx) das rotas /chat do backend."""

    def __init__(
        self,
        base_url: str,
        api_prefix: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_prefix = api_prefix if api_prefix is not None else settings.API_V1_STR
        self.token = token
        # Envio espera a automação aceitar a mensagem; margem acima do timeout do servidor
        self.timeout = timeout or settings.CHAT_SUBMIT_TIMEOUT_SECONDS + 5
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    def _path(self, suffix: str) -> str:
        return f"{self.api_prefix}/chat{suffix}"

    async def submit_message(self, session_key: str, text: str) -> None:
        payload: Dict[str, Any] = {"chatId": session_key, "message": text}
        if self.token:
            payload["token"] = self.token
        try:
            response = await self._client.post(self._path("/messages"), json=payload, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ClientSubmitError("Tempo esgotado ao enviar a mensagem.", status_code=504) from e
        except httpx.RequestError as e:
            raise ClientSubmitError(f"Falha de conexão: {e}", status_code=None) from e

        if response.is_success:
            return
        try:
            error = response.json().get("error") or response.text
        except (json.JSONDecodeError, ValueError, AttributeError):
            error = response.text or f"HTTP {response.status_code}"
        raise ClientSubmitError(str(error), status_code=response.status_code)

    async def check_response(self, session_key: str) -> Optional[str]:
        response = await self._client.get(self._path(f"/response/{session_key}"))
        response.raise_for_status()
        data = response.json()
        if data.get("success") and data.get("message"):
            return data["message"]
        return None

    async def acknowledge(self, session_key: str) -> bool:
        response = await self._client.delete(self._path(f"/response/{session_key}"))
        response.raise_for_status()
        return bool(response.json().get("deleted"))

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

class WebSocketSubscription:
    """
    Assinatura realtime de uma sessão via WebSocket do backend.

    Reconecta sozinha enquanto não for fechada. Mensagens publicadas enquanto a
    conexão estava caída são perdidas (sem replay); o polling cobre esse buraco.
    """

    def __init__(
        self,
        url: str,
        on_reply: ReplyHandler,
        event: Optional[str] = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        close_timeout: float = 5.0,
    ):
        self.url = url
        self.on_reply = on_reply
        self.event = event or settings.CHAT_BROADCAST_EVENT
        self._reconnect_delay = reconnect_delay
        self._initial_reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self.close_timeout = close_timeout
        self._active = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self.log = logger.bind(service="WebSocketSubscription", url=url)

    @property
    def active(self) -> bool:
        return self._active.is_set()

    def start(self) -> "WebSocketSubscription":
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run(), name=f"chat-subscription:{self.url}")
        return self

    async def wait_active(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._active.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self):
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task:
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=self.close_timeout)
            if not done:
                self.log.warning("Realtime subscription did not stop in time.")
        self._active.clear()

    async def _run(self):
        while not self._closed:
            try:
                async with websockets.connect(self.url, ping_interval=20, ping_timeout=10) as ws:
                    self._reconnect_delay = self._initial_reconnect_delay
                    async for raw in ws:
                        self._handle_frame(raw)
                self.log.warning("Realtime connection closed by server.")
            except asyncio.CancelledError:
                raise
            except websockets.ConnectionClosed as e:
                self.log.warning(f"Realtime connection closed: {e}")
            except (OSError, websockets.exceptions.InvalidHandshake) as e:
                self.log.warning(f"Realtime connection failed: {e}")
            except Exception as e:
                self.log.error(f"Realtime subscription error: {type(e).__name__}: {e}")
            finally:
                self._active.clear()

            if self._closed:
                break
            self.log.info(f"Reconnecting realtime subscription in {self._reconnect_delay:.1f}s...")
            await asyncio.sleep(self._reconnect_delay)
            self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    def _handle_frame(self, raw: Any):
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return  # "pong" e afins
        if not isinstance(data, dict):
            return

        if data.get("type") == "system":
            status = data.get("status")
            if status == "SUBSCRIBED":
                self._active.set()
                self.log.debug("Realtime subscription active.")
            else:
                self.log.warning(f"Realtime subscription status: {status}")
            return

        if data.get("type") != "broadcast" or data.get("event") != self.event:
            return
        message = (data.get("payload") or {}).get("message")
        if message:
            self.on_reply(message)

class HttpChatTransport:
    """DeliveryTransport completo: httpx para envio/polling, WebSocket para o broadcast."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        api_prefix: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api = ChatApiClient(base_url, api_prefix=api_prefix, token=token, http_client=http_client)
        self.ws_base_url = self.api.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)

    def realtime_url(self, session_key: str) -> str:
        return f"{self.ws_base_url}{self.api.api_prefix}/chat/ws/{session_key}"

    async def submit(self, session_key: str, text: str) -> None:
        await self.api.submit_message(session_key, text)

    async def check_response(self, session_key: str) -> Optional[str]:
        return await self.api.check_response(session_key)

    async def acknowledge(self, session_key: str) -> bool:
        return await self.api.acknowledge(session_key)

    async def subscribe(self, session_key: str, on_reply: ReplyHandler) -> WebSocketSubscription:
        return WebSocketSubscription(self.realtime_url(session_key), on_reply).start()

    async def aclose(self):
        await self.api.aclose()
