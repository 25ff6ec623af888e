# secretaria/modules/chat/tokens.py

import base64
import binascii
import json
import uuid
from typing import Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

class PublicChatToken(BaseModel):
    """Token opaco do link público de chat: base64 de {"tenantId": ..., "chatId": ...}."""
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId")
    chat_id: Optional[str] = Field(None, alias="chatId")

def encode_public_chat_token(tenant_id: str, chat_id: Optional[str] = None) -> str:
    payload = json.dumps({"tenantId": tenant_id, "chatId": chat_id}, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")

def decode_public_chat_token(token: str) -> PublicChatToken:
    """
    Decodifica o token do link público.

    Aceita o formato JSON atual e o formato antigo (base64 só do tenantId).
    Levanta ValueError se o token for ilegível ou não trouxer tenant.
    """
    try:
        raw = base64.b64decode(token, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValueError("Link inválido ou corrompido.") from e

    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        decoded = raw # Token antigo: só o tenantId

    if isinstance(decoded, dict):
        tenant_id = decoded.get("tenantId")
        chat_id = decoded.get("chatId")
    else:
        tenant_id, chat_id = str(decoded), None

    if not tenant_id:
        raise ValueError("Link inválido.")
    return PublicChatToken(tenantId=str(tenant_id), chatId=str(chat_id) if chat_id else None)

def new_session_key(token: Optional[str] = None) -> str:
    """Gera a chave da sessão: o chatId do token quando houver, senão um UUID novo."""
    if token:
        try:
            chat_id = decode_public_chat_token(token).chat_id
            if chat_id:
                return chat_id
        except ValueError as e:
            logger.warning(f"Ignoring unreadable chat token while creating session key: {e}")
    return str(uuid.uuid4())
