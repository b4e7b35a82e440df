"""
Celery worker / beat entry point.

Run with:
    celery -A main worker --concurrency=4
    celery -A main beat

The worker pool size (--concurrency) bounds how many notifications are
processed at once; beat only enqueues.
"""
import os
import sys

# Add API directory to path so we can import tasks
sys.path.insert(0, os.environ.get("API_DIR", "/api"))

# Import Celery app and tasks from API
from tasks import celery_app  # noqa: E402

app = celery_app


@celery_app.task(name="worker.health_check")
def health_check():
    """Health check task"""
    return {"status": "ok"}
