# secretaria/modules/chat/repository.py

from datetime import datetime
from typing import List, Optional
import re

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING
from loguru import logger

from secretaria.core.config import settings
from secretaria.core.database import get_database_or_none
from secretaria.core.repository import BaseRepository
from .models import PendingResponseInDB

class PendingResponseRepository(BaseRepository):
    """
    Response Store: uma resposta pendente por sessão, na coleção de configs chaveadas.

    A chave é prefixada (``chat_response_<sessionKey>``) para não colidir com as
    outras configurações guardadas na mesma coleção.
    """
    model = PendingResponseInDB
    collection_name = settings.CHAT_RESPONSE_COLLECTION

    def __init__(self, db: Optional[AsyncIOMotorDatabase], key_prefix: str | None = None):
        super().__init__(db)
        self.key_prefix = key_prefix if key_prefix is not None else settings.CHAT_RESPONSE_KEY_PREFIX

    def key_for(self, session_key: str) -> str:
        return f"{self.key_prefix}{session_key}"

    async def create_indexes(self):
        try:
            await self.collection.create_index("key", unique=True)
            await self.collection.create_index([("updated_at", DESCENDING)])
            logger.info(f"Índices criados/verificados para a coleção: {self.collection_name}")
        except Exception as e:
            logger.exception(f"Erro ao criar índices para {self.collection_name}: {e}")

    async def save(self, session_key: str, text: str) -> PendingResponseInDB:
        """Upsert last-write-wins da resposta da sessão."""
        key = self.key_for(session_key)
        document = await self.upsert_by({"key": key}, {"key": key, "value": text})
        logger.bind(key=key).debug(f"Pending response stored ({len(text)} chars).")
        return document

    async def get(self, session_key: str) -> Optional[PendingResponseInDB]:
        return await self.get_by({"key": self.key_for(session_key)})

    async def consume(self, session_key: str) -> Optional[PendingResponseInDB]:
        """Lê e apaga num único passo: dois leitores concorrentes nunca recebem a mesma resposta."""
        return await self.pop_by({"key": self.key_for(session_key)})

    async def delete(self, session_key: str) -> bool:
        return await self.delete_by({"key": self.key_for(session_key)})

    async def list_recent(self, limit: int = 10) -> List[PendingResponseInDB]:
        query = {"key": {"$regex": f"^{re.escape(self.key_prefix)}"}}
        return await self.list_by(query=query, limit=limit, sort=[("updated_at", DESCENDING)])

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Varredura de retenção: remove respostas de sessões abandonadas."""
        query = {
            "key": {"$regex": f"^{re.escape(self.key_prefix)}"},
            "updated_at": {"$lt": cutoff},
        }
        deleted = await self.delete_many_by(query)
        logger.info(f"Purged {deleted} stale pending responses older than {cutoff.isoformat()}.")
        return deleted

# Função de dependência FastAPI
async def get_pending_response_repository(
    db: Optional[AsyncIOMotorDatabase] = Depends(get_database_or_none),
) -> PendingResponseRepository:
    """FastAPI dependency to get PendingResponseRepository instance."""
    return PendingResponseRepository(db)
