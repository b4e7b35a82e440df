"""
Celery app for the ingestion pipeline.

Tasks are defined in this package and imported by both the API (to enqueue)
and the worker (to execute). Celery beat drives the periodic sweeps listed in
celerybeat_schedule.py.
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from core.config import settings
from core.logging import setup_logging
from celerybeat_schedule import beat_schedule

# Create Celery app instance
celery_app = Celery(
    "challenge_ingestion",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes max per task
    task_soft_time_limit=8 * 60,
    # A task is only acknowledged once it finished, so a killed worker's
    # message is redelivered instead of dropped.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule=beat_schedule,
)

# Worker and beat log through the same JSON formatter as the API.
celery_setup_logging.connect(setup_logging)

# Import tasks to register them
from . import notification_tasks  # noqa: E402
from . import activity_file_tasks  # noqa: E402

__all__ = ["celery_app"]
