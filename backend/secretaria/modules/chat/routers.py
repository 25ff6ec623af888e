# secretaria/modules/chat/routers.py

import hmac
import json
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.exceptions import ClientSubmitError, DurablePersistenceError, PublishValidationError
from secretaria.core.logging_config import trace_id_var
from .broadcast import BroadcastRelay, ChannelState, get_broadcast_relay
from .models import (
    AcknowledgeResultAPI, CheckResponseAPI, ErrorResponseAPI, PendingResponseDebugAPI,
    PendingResponseSummaryAPI, PublishResultAPI, SubmitMessagePayloadAPI, SubmitResultAPI,
    TestPublishResultAPI,
)
from .services import ChatDeliveryService, get_chat_delivery_service
from .submission import AutomationWebhookClient, get_automation_client

chat_router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponseAPI},
    403: {"model": ErrorResponseAPI},
    500: {"model": ErrorResponseAPI},
}

def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})

# --- Autenticação do worker que publica (opcional) ---
async def verify_publish_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
    expected_api_key = settings.CHAT_PUBLISH_API_KEY
    if not expected_api_key:
        return
    if not x_api_key or not hmac.compare_digest(x_api_key, expected_api_key):
        logger.bind(trace_id=trace_id_var.get(), service="PublishAuth").warning("Publish rejected: invalid or missing API key.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")

@chat_router.post(
    "/response",
    response_model=PublishResultAPI,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(verify_publish_api_key)],
    summary="Publish a finalized AI reply for a chat session",
    tags=["Chat"]
)
async def publish_response_endpoint(
    request: Request,
    service: ChatDeliveryService = Depends(get_chat_delivery_service),
):
    """
    Chamado pela automação quando a resposta está pronta.

    Aceita ``chatId``/``sessionKey`` e ``message``/``output``. Grava no Response
    Store e tenta o broadcast; só a falha da gravação vira erro.
    """
    log = logger.bind(trace_id=trace_id_var.get(), api_endpoint="/chat/response POST")
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.warning("Publish rejected: body is not valid JSON.")
        return error_response(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    try:
        await service.publish(body)
    except PublishValidationError as e:
        log.warning(f"Publish rejected: {e}")
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except DurablePersistenceError as e:
        log.error(f"Publish failed on durable write: {e}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    return PublishResultAPI()

@chat_router.get(
    "/response/{session_key}",
    response_model=CheckResponseAPI,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="Poll for the pending reply of a session",
    tags=["Chat"]
)
async def check_response_endpoint(
    session_key: str = Path(..., min_length=1),
    service: ChatDeliveryService = Depends(get_chat_delivery_service),
):
    try:
        message = await service.check_response(session_key)
    except DurablePersistenceError as e:
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    if message is None:
        return CheckResponseAPI(success=False)
    return CheckResponseAPI(success=True, message=message)

@chat_router.delete(
    "/response/{session_key}",
    response_model=AcknowledgeResultAPI,
    responses=ERROR_RESPONSES,
    summary="Acknowledge (consume) a reply already rendered by the client",
    tags=["Chat"]
)
async def acknowledge_response_endpoint(
    session_key: str = Path(..., min_length=1),
    service: ChatDeliveryService = Depends(get_chat_delivery_service),
):
    try:
        deleted = await service.acknowledge(session_key)
    except DurablePersistenceError as e:
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    return AcknowledgeResultAPI(deleted=deleted)

@chat_router.post(
    "/messages",
    response_model=SubmitResultAPI,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponseAPI}, 503: {"model": ErrorResponseAPI}},
    summary="Submit a user chat message to the AI automation",
    tags=["Chat"]
)
async def submit_message_endpoint(
    payload: SubmitMessagePayloadAPI,
    automation: AutomationWebhookClient = Depends(get_automation_client),
):
    """Não espera a resposta da IA: ela chega depois pelo broadcast ou pelo polling."""
    try:
        await automation.forward_user_message(payload.session_key, payload.message, token=payload.token)
    except ClientSubmitError as e:
        return error_response(e.status_code or status.HTTP_502_BAD_GATEWAY, str(e))
    return SubmitResultAPI()

@chat_router.get(
    "/test",
    response_model=TestPublishResultAPI,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(verify_publish_api_key)],
    summary="Run the full publish flow with a test message",
    tags=["Chat Diagnostics"]
)
async def test_publish_endpoint(
    chat_id: Optional[str] = Query(None, alias="chatId"),
    message: str = Query("Mensagem de teste!"),
    service: ChatDeliveryService = Depends(get_chat_delivery_service),
):
    if not chat_id:
        return error_response(status.HTTP_400_BAD_REQUEST, "Missing chatId parameter")
    log = logger.bind(trace_id=trace_id_var.get(), session_key=chat_id, api_endpoint="/chat/test GET")
    log.info("=== TEST ENDPOINT CALLED ===")
    try:
        outcome = await service.publish({"chatId": chat_id, "message": message})
    except PublishValidationError as e:
        return error_response(status.HTTP_400_BAD_REQUEST, str(e))
    except DurablePersistenceError as e:
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    return TestPublishResultAPI(
        chatId=outcome.session_key,
        message=outcome.text,
        dbWritten=outcome.persisted,
        broadcastAttempted=outcome.broadcast.attempted,
        receivers=outcome.broadcast.receivers,
    )

@chat_router.get(
    "/debug",
    response_model=PendingResponseDebugAPI,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(verify_publish_api_key)],
    summary="List the most recent pending replies",
    tags=["Chat Diagnostics"]
)
async def debug_pending_responses_endpoint(
    limit: int = Query(10, ge=1, le=100),
    service: ChatDeliveryService = Depends(get_chat_delivery_service),
):
    try:
        records = await service.list_recent(limit=limit)
    except DurablePersistenceError as e:
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))
    configs = [
        PendingResponseSummaryAPI(
            key=r.key,
            value=r.value[:50] + ("..." if len(r.value) > 50 else ""),
            updated_at=r.updated_at,
        )
        for r in records
    ]
    return PendingResponseDebugAPI(count=len(configs), configs=configs)

# --- Ponte realtime: Broadcast Relay -> WebSocket do cliente ---
@chat_router.websocket("/ws/{session_key}", name="chat_realtime")
async def chat_realtime_endpoint(
    websocket: WebSocket,
    session_key: str,
    relay: BroadcastRelay = Depends(get_broadcast_relay),
):
    """
    Registra a sessão no relay do processo e repassa cada broadcast para o cliente.

    Primeiro frame: ``{"type": "system", "status": "SUBSCRIBED"}`` (ou o estado de
    erro, seguido de fechamento). Responde ``ping`` com ``pong``.
    """
    await websocket.accept()
    client = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    log = logger.bind(session_key=session_key, websocket_client=client, service="ChatRealtime")

    async def forward(envelope: dict):
        await websocket.send_json({k: v for k, v in envelope.items() if k != "sender"})

    try:
        active = await relay.register(session_key, forward, settings.CHAT_BROADCAST_TIMEOUT_SECONDS)
        await websocket.send_json({"type": "system", "status": ChannelState.SUBSCRIBED.value if active else relay.state.value})
        if not active:
            log.warning(f"Realtime subscription failed ({relay.state.value}); client will rely on polling.")
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return

        log.info(f"Realtime subscription active ({relay.listeners} local listener(s)).")
        while True:
            data = await websocket.receive_text()
            if data.strip().lower() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect as e:
        log.info(f"WebSocket disconnected (code: {e.code}).")
    except Exception as e:
        log.exception(f"Error in realtime bridge: {e}")
    finally:
        relay.unregister(session_key, forward)
        log.debug("Realtime listener released.")
