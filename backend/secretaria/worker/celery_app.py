# secretaria/worker/celery_app.py
from celery import Celery
from datetime import timedelta

from secretaria.core.config import settings

celery_app = Celery(
    "secretaria_tasks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "secretaria.worker.tasks_chat",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        # Respostas nunca lidas (aba fechada antes da resposta chegar)
        "purge-stale-chat-responses": {
            "task": "chat.purge_stale_responses",
            "schedule": timedelta(minutes=settings.CHAT_RESPONSE_SWEEP_MINUTES),
            "options": {"queue": "periodic"}
        },
    }
)
