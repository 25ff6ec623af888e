# secretaria/modules/chat/models.py

from datetime import datetime
from typing import Any, Optional, List

from pydantic import BaseModel, ConfigDict, Field, model_validator

from secretaria.core.exceptions import PublishValidationError

# Nomes aceitos no corpo do publish (o n8n manda um ou outro)
SESSION_KEY_FIELDS = ("chatId", "sessionKey")
TEXT_FIELDS = ("message", "output")

def strip_template_artifact(value: Optional[str]) -> Optional[str]:
    """Remove exatamente um '=' inicial (artefato das expressões do n8n)."""
    if value and value.startswith("="):
        return value[1:]
    return value

def _first_present(data: dict, names: tuple) -> Optional[str]:
    # Limpa cada candidato ANTES de escolher: {"chatId": "=", "sessionKey": "abc"} -> "abc"
    for name in names:
        value = data.get(name)
        if value is None:
            continue
        value = strip_template_artifact(str(value))
        if value.strip():
            return value
    return None

# --- Modelo interno / DB ---

class PendingResponseInDB(BaseModel):
    """Documento do Response Store: última resposta pendente de uma sessão."""
    model_config = ConfigDict(extra="ignore")

    key: str
    value: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

# --- Payloads de entrada ---

class PublishResponsePayload(BaseModel):
    """Corpo do POST /chat/response, normalizado para session_key + text."""

    session_key: Optional[str] = None
    text: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {
            "session_key": _first_present(data, ("session_key",) + SESSION_KEY_FIELDS),
            "text": _first_present(data, ("text",) + TEXT_FIELDS),
        }

    def ensure_complete(self) -> "PublishResponsePayload":
        if not self.session_key or not self.session_key.strip() or not self.text or not self.text.strip():
            raise PublishValidationError("Missing chatId or message")
        return self

def parse_publish_payload(body: Any) -> PublishResponsePayload:
    """Valida o corpo cru do publish. Levanta PublishValidationError (HTTP 400)."""
    if not isinstance(body, dict):
        raise PublishValidationError("Request body must be a JSON object")
    return PublishResponsePayload.model_validate(body).ensure_complete()

class SubmitMessagePayloadAPI(BaseModel):
    """Mensagem do usuário enviada pelo cliente de chat."""
    model_config = ConfigDict(populate_by_name=True)

    session_key: str = Field(..., alias="chatId", min_length=1)
    message: str = Field(..., min_length=1)
    token: Optional[str] = Field(None, description="Token do link público (base64 {tenantId, chatId}).")

# --- Respostas da API ---

class PublishResultAPI(BaseModel):
    success: bool = True

class CheckResponseAPI(BaseModel):
    success: bool
    message: Optional[str] = None

class AcknowledgeResultAPI(BaseModel):
    success: bool = True
    deleted: bool

class SubmitResultAPI(BaseModel):
    success: bool = True

class TestPublishResultAPI(BaseModel):
    success: bool = True
    chatId: str
    message: str
    dbWritten: bool
    broadcastAttempted: bool
    receivers: int = 0

class PendingResponseSummaryAPI(BaseModel):
    key: str
    value: str
    updated_at: Optional[datetime] = None

class PendingResponseDebugAPI(BaseModel):
    success: bool = True
    count: int
    configs: List[PendingResponseSummaryAPI]

class ErrorResponseAPI(BaseModel):
    error: str
