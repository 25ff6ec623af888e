# secretaria/api/endpoints/status.py
from fastapi import APIRouter, Depends, status as http_status, Response
from loguru import logger
import uuid
from redis.asyncio import Redis
import asyncio
from datetime import datetime, timezone
import time as process_time
from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field
from celery.exceptions import OperationalError as CeleryOperationalError

from secretaria.core.logging_config import trace_id_var
from secretaria.core.database import get_database_or_none, get_redis_client_or_none, AsyncIOMotorDatabase
from secretaria.worker.celery_app import celery_app

class ComponentStatus(BaseModel):
    status: Literal["ok", "error", "unavailable"] = "ok"
    message: Optional[str] = None

class HealthCheckResponse(BaseModel):
    overall_status: Literal["ok", "degraded", "error"] = "ok"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    uptime_seconds: float = Field(..., description="Process uptime in seconds")
    components: Dict[str, ComponentStatus]

PROCESS_START_TIME = process_time.monotonic()

router = APIRouter()

@router.get(
    "/healthcheck",
    response_model=HealthCheckResponse,
    tags=["Status & Health"],
    summary="Application Health and Component Status Check"
)
async def get_application_health(
    db: Optional[AsyncIOMotorDatabase] = Depends(get_database_or_none),
    redis: Optional[Redis] = Depends(get_redis_client_or_none)
):
    """
    MongoDB é crítico (Response Store). Redis e Celery só degradam: sem o
    broadcast o cliente continua recebendo pelo polling.
    """
    trace_id = trace_id_var.get() or f"health_{uuid.uuid4().hex[:8]}"
    log = logger.bind(trace_id=trace_id, api_endpoint="/healthcheck GET")
    log.info("Performing application health check...")

    component_statuses: Dict[str, ComponentStatus] = {}
    critical_ok = True
    degraded = False

    if db is not None:
        try:
            await db.command('ping')
            component_statuses["response_store_mongodb"] = ComponentStatus(status="ok")
            log.debug("MongoDB ping successful.")
        except Exception as e:
            err_msg = f"MongoDB connection check failed: {e}"
            log.error(err_msg)
            component_statuses["response_store_mongodb"] = ComponentStatus(status="error", message=err_msg)
            critical_ok = False
    else:
        log.error("MongoDB connection not available.")
        component_statuses["response_store_mongodb"] = ComponentStatus(status="error", message="DB Client not available")
        critical_ok = False

    if redis is not None:
        try:
            await redis.ping()
            component_statuses["broadcast_redis"] = ComponentStatus(status="ok")
            log.debug("Redis ping successful.")
        except Exception as e:
            err_msg = f"Redis connection check failed: {e}"
            log.warning(err_msg)
            component_statuses["broadcast_redis"] = ComponentStatus(status="error", message=err_msg)
            degraded = True
    else:
        log.warning("Redis connection not available. Clients will fall back to polling.")
        component_statuses["broadcast_redis"] = ComponentStatus(status="unavailable", message="Redis Client not available")
        degraded = True

    celery_status = ComponentStatus(status="unavailable", message="Check not run or failed.")
    try:
        inspector = celery_app.control.inspect(timeout=1.5)
        ping_results = await asyncio.to_thread(inspector.ping)
        if ping_results:
            celery_status = ComponentStatus(status="ok", message=f"{len(ping_results)} worker(s) responded.")
            log.debug("Celery worker ping successful.")
        else:
            celery_status = ComponentStatus(status="unavailable", message="No workers responded to ping.")
    except CeleryOperationalError as e:
        log.error(f"Celery broker connection error during ping: {e}")
        celery_status = ComponentStatus(status="error", message="Broker connection error")
    except Exception as e:
        log.error(f"Celery worker check failed unexpectedly: {e}")
        celery_status = ComponentStatus(status="error", message="Ping check error")

    if celery_status.status != "ok":
        degraded = True
    component_statuses["celery_workers"] = celery_status

    uptime_seconds = process_time.monotonic() - PROCESS_START_TIME
    overall_status: Literal["ok", "degraded", "error"] = "error" if not critical_ok else ("degraded" if degraded else "ok")

    response_payload = HealthCheckResponse(
        overall_status=overall_status,
        uptime_seconds=uptime_seconds,
        components=component_statuses
    )

    status_code = http_status.HTTP_200_OK if critical_ok else http_status.HTTP_503_SERVICE_UNAVAILABLE
    return Response(
        content=response_payload.model_dump_json(exclude_none=True),
        status_code=status_code,
        media_type="application/json"
    )
