# secretaria/worker/tasks_chat.py
from secretaria.worker.celery_app import celery_app
from loguru import logger
from secretaria.core.logging_config import trace_id_var
import uuid
import asyncio
from datetime import timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from secretaria.core.config import settings
from secretaria.core.database import MongoDbContext
from secretaria.core.exceptions import DurablePersistenceError
from secretaria.core.repository import utcnow
from secretaria.modules.chat.repository import PendingResponseRepository

async def purge_stale_responses(db: AsyncIOMotorDatabase, retention_hours: Optional[int] = None) -> int:
    """Remove do Response Store as respostas mais antigas que a retenção."""
    hours = retention_hours or settings.CHAT_RESPONSE_RETENTION_HOURS
    cutoff = utcnow() - timedelta(hours=hours)
    return await PendingResponseRepository(db).delete_older_than(cutoff)

async def _run_purge(retention_hours: Optional[int]) -> int:
    # Worker não passa pelo lifespan do FastAPI: conexão própria por execução
    async with MongoDbContext() as mongo:
        return await purge_stale_responses(mongo.get_db(), retention_hours)

@celery_app.task(bind=True, name="chat.purge_stale_responses", max_retries=2, default_retry_delay=60, acks_late=True)
def purge_stale_responses_task(self, retention_hours: Optional[int] = None, trace_id: Optional[str] = None):
    """Task periódica (beat): varredura de retenção das respostas pendentes."""
    current_trace_id = trace_id or f"task_{uuid.uuid4().hex[:12]}"; token = trace_id_var.set(current_trace_id)
    log = logger.bind(trace_id=current_trace_id, task_name=self.name, job_id=self.request.id)
    log.info("Purging stale pending chat responses...")
    try:
        deleted = asyncio.run(_run_purge(retention_hours))
        log.success(f"Stale response sweep finished. Deleted={deleted}")
        return {"status": "ok", "deleted": deleted}
    except (ConnectionError, DurablePersistenceError) as e:
        log.error(f"Stale response sweep failed: {e}. Retrying...")
        raise self.retry(exc=e)
    finally:
        trace_id_var.reset(token)
