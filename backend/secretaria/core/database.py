# secretaria/core/database.py

import motor.motor_asyncio
from motor.motor_asyncio import AsyncIOMotorDatabase
import redis.asyncio as redis
from contextlib import AbstractAsyncContextManager
from loguru import logger
from typing import Optional, cast

from secretaria.core.config import settings

# --- MongoDB ---
class MongoDbContext(AbstractAsyncContextManager):
    client: Optional[motor.motor_asyncio.AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None

    def __init__(self, uri: str | None = None, db_name: str | None = None):
        self.uri = uri or settings.MONGODB_URI
        self.db_name = db_name or settings.MONGODB_DB_NAME

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    @staticmethod
    def _db_name_from_uri(uri: str) -> str:
        uri_path = uri.split('/')[-1]
        db_name = uri_path.split('?')[0]
        if not db_name or '@' in db_name or ':' in db_name or len(db_name) > 63:
            db_name = "secretaria"
            logger.warning(f"Could not parse DB name from URI, using default: {db_name}")
        return db_name

    async def connect(self):
        """Establishes and verifies connection to MongoDB."""
        if self.client is not None and self.db is not None:
            logger.info("MongoDB connection already established.")
            return

        logger.info("Connecting to MongoDB...")
        try:
            self.client = motor.motor_asyncio.AsyncIOMotorClient(
                self.uri,
                uuidRepresentation='standard',
                serverSelectionTimeoutMS=5000
            )
            # Forçar conexão pingando o servidor
            await self.client.admin.command('ping')

            db_name = self.db_name or self._db_name_from_uri(self.uri)
            self.db = self.client[db_name]
            logger.success(f"MongoDB connection successful to database '{db_name}'.")
        except Exception as e:
            logger.critical(f"FATAL: Failed to connect to MongoDB: {e}")
            self.client = None
            self.db = None
            raise ConnectionError(f"MongoDB connection failed: {e}") from e

    async def disconnect(self):
        """Closes the MongoDB connection."""
        if self.client:
            logger.info("Closing MongoDB connection...")
            try:
                self.client.close()
                logger.info("MongoDB connection closed.")
            except Exception as e:
                logger.error(f"Error closing MongoDB connection: {e}")
            finally:
                self.client = None
                self.db = None

    def get_db(self) -> AsyncIOMotorDatabase:
        """Returns the database instance, raising error if not connected."""
        if self.db is None:
            logger.critical("Attempted to get MongoDB instance, but it's not available.")
            raise RuntimeError("MongoDB database is not connected or initialized.")
        return cast(AsyncIOMotorDatabase, self.db)

mongo_manager = MongoDbContext()

# --- Redis ---
class RedisContext(AbstractAsyncContextManager):
    client: Optional[redis.Redis] = None

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def connect(self):
        """Connects to Redis."""
        if self.client:
            logger.info("Redis connection already established.")
            return
        logger.info("Connecting to Redis...")
        try:
            # Pub/sub das pontes WebSocket é uma só por processo (BroadcastRelay);
            # o resto são publishes curtos, que esperam conexão livre em vez de falhar
            pool = redis.BlockingConnectionPool.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                timeout=settings.REDIS_POOL_TIMEOUT_SECONDS,
            )
            self.client = redis.Redis(connection_pool=pool)
            await self.client.ping()
            logger.success("Redis connection successful.")
        except Exception as e:
            # Sem Redis o chat continua funcionando só via polling
            logger.error(f"Could not connect to Redis: {e}. Realtime broadcast disabled.")
            self.client = None

    async def disconnect(self):
        """Closes the Redis connection pool."""
        if self.client:
            logger.info("Closing Redis connection pool...")
            try:
                await self.client.aclose()
                await self.client.connection_pool.disconnect()
                logger.info("Redis connection pool closed.")
            except Exception as e:
                logger.error(f"Error closing Redis connection pool: {e}")
            finally:
                self.client = None

redis_manager = RedisContext()

# --- Funções de Dependência FastAPI ---

async def get_database_or_none() -> Optional[AsyncIOMotorDatabase]:
    """Database ou None (Mongo fora do ar). O repositório levanta DurablePersistenceError ao usar."""
    return mongo_manager.db

async def get_redis_client_or_none() -> Optional[redis.Redis]:
    """Redis é best-effort para o broadcast: None quando indisponível."""
    return redis_manager.client
