# secretaria/core/repository.py

from typing import Type, Optional, List, Any, Dict, Tuple
from abc import ABC
from datetime import datetime, timezone

from pydantic import BaseModel
from motor.motor_asyncio import AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo import ReturnDocument
from loguru import logger

from secretaria.core.exceptions import DurablePersistenceError

def utcnow() -> datetime:
    """UTC naive, como o MongoDB armazena e devolve datas por padrão."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

class BaseRepository(ABC):
    """Classe base para repositórios MongoDB endereçados por chave de negócio (não ObjectId)."""

    model: Type[BaseModel]
    collection_name: str

    def __init__(self, db: Optional[AsyncIOMotorDatabase]):
        if not getattr(self, 'collection_name', None):
            raise AttributeError("Repository subclass must define a 'collection_name'")
        if not hasattr(self, 'model') or not issubclass(self.model, BaseModel):
            raise AttributeError("Repository subclass must define a Pydantic 'model'")

        self.db = db
        # db None = Mongo fora do ar; cada operação falha com DurablePersistenceError
        self._collection: Optional[AsyncIOMotorCollection] = db[self.collection_name] if db is not None else None
        logger.debug(f"BaseRepository initialized for collection: '{self.collection_name}' (connected={db is not None})")

    @property
    def collection(self) -> AsyncIOMotorCollection:
        if self._collection is None:
            raise DurablePersistenceError(f"Database not connected (collection '{self.collection_name}').")
        return self._collection

    def _handle_db_exception(self, e: Exception, operation: str, query: Optional[Dict] = None):
        """Loga e levanta DurablePersistenceError padronizado."""
        if isinstance(e, DurablePersistenceError):
            logger.error(f"DB unavailable during op='{operation}' coll='{self.collection_name}': {e}")
            raise e
        context = f"op='{operation}' coll='{self.collection_name}'"
        if query: context += f" query='{str(query)[:100]}'"
        logger.exception(f"DB Error during {context}: {e}")
        raise DurablePersistenceError(f"Database error during operation: {operation}") from e

    async def get_by(self, query: Dict[str, Any]) -> Optional[BaseModel]:
        """Busca o PRIMEIRO documento que corresponde a um critério."""
        try:
            document = await self.collection.find_one(query)
        except Exception as e:
            self._handle_db_exception(e, "get_by", query=query)
        return self.model.model_validate(document) if document else None

    async def list_by(
        self,
        query: Dict[str, Any] | None = None,
        skip: int = 0,
        limit: int = 100,
        sort: Optional[List[Tuple[str, int]]] = None
    ) -> List[BaseModel]:
        """Lista documentos com base em critérios, paginação e ordenação."""
        query = query or {}
        try:
            cursor = self.collection.find(query)
            if sort:
                cursor = cursor.sort(sort)
            cursor = cursor.skip(max(0, skip)).limit(max(0, limit))
            documents = await cursor.to_list(length=limit if limit > 0 else None)
        except Exception as e:
            self._handle_db_exception(e, "list_by", query=query)
        return [self.model.model_validate(doc) for doc in documents]

    async def upsert_by(self, query: Dict[str, Any], data: Dict[str, Any]) -> BaseModel:
        """Cria ou sobrescreve (last-write-wins) o documento que casa com a query, de forma atômica."""
        now = utcnow()
        update_data = {**data, "updated_at": now}
        for field in ("_id", "created_at"):
            update_data.pop(field, None)
        try:
            document = await self.collection.find_one_and_update(
                query,
                {"$set": update_data, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
        except Exception as e:
            self._handle_db_exception(e, "upsert_by", query=query)
        if document is None:
            logger.critical(f"CRITICAL: upsert returned no document! coll='{self.collection_name}' query='{query}'")
            raise DurablePersistenceError("Failed to retrieve document after upsert.")
        return self.model.model_validate(document)

    async def pop_by(self, query: Dict[str, Any]) -> Optional[BaseModel]:
        """Remove e devolve o documento atomicamente (consumo único)."""
        try:
            document = await self.collection.find_one_and_delete(query)
        except Exception as e:
            self._handle_db_exception(e, "pop_by", query=query)
        return self.model.model_validate(document) if document else None

    async def delete_by(self, query: Dict[str, Any]) -> bool:
        try:
            result = await self.collection.delete_one(query)
        except Exception as e:
            self._handle_db_exception(e, "delete_by", query=query)
        return result.deleted_count > 0

    async def delete_many_by(self, query: Dict[str, Any]) -> int:
        try:
            result = await self.collection.delete_many(query)
        except Exception as e:
            self._handle_db_exception(e, "delete_many_by", query=query)
        return result.deleted_count

