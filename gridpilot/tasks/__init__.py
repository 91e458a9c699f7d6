"""Celery application for GridPilot sync workers.

Sync workers persist provider payloads and tell API processes which
cached recommendations are now stale.
"""

from celery import Celery

from gridpilot.config import get_settings

settings = get_settings()

celery_app = Celery(
    "gridpilot",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["gridpilot.tasks.sync"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Ingestion can be slow; notifications must not queue behind it
    task_routes={
        "gridpilot.tasks.sync.ingest_*": {"queue": "ingest"},
        "gridpilot.tasks.sync.*_synced": {"queue": "notify"},
    },
    task_acks_late=True,
    task_time_limit=300,
    task_soft_time_limit=270,
    result_expires=3600,
    worker_prefetch_multiplier=1,
)
