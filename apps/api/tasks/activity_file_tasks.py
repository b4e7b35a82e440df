"""
Uploaded activity file ingestion (runs in the Celery worker).

Uploads bypass webhook intake and the retry scheduler: the file on disk is
the durable copy, and the task is enqueued once by the upload endpoint.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

from core.database import get_db_sync
from core.exceptions import PermanentProcessingError
from tasks import celery_app

logger = logging.getLogger(__name__)


def ingest_activity_file(db, stored_path: Path, file_name: str) -> Dict[str, Any]:
    from services.activity_normalizer import normalize_uploaded_file
    from services.fit_file_decoder import decode_fit_bytes
    from services.notification_pipeline import aggregate_activities

    try:
        record = decode_fit_bytes(stored_path.read_bytes(), file_name)
    except PermanentProcessingError as e:
        logger.error(f"Rejected activity file {file_name}: {e.message}")
        return {"status": "permanent", "error": e.message}

    outcome = normalize_uploaded_file(db, record)
    result = outcome.to_dict()
    if outcome.succeeded and outcome.created_activity_ids:
        result["aggregation"] = aggregate_activities(db, outcome.created_activity_ids)
    return result


@celery_app.task(name="tasks.ingest_activity_file", bind=True)
def ingest_activity_file_task(self, stored_path: str, file_name: str) -> Dict[str, Any]:
    path = Path(stored_path)
    if not path.exists():
        logger.error(f"Stored activity file missing: {stored_path}")
        return {"status": "error", "error": "stored_file_missing"}

    db = get_db_sync()
    try:
        result = ingest_activity_file(db, path, file_name)
    finally:
        db.close()

    # Transient failures keep the file so the task can be retried.
    if result.get("status") == "transient":
        raise self.retry(countdown=60, max_retries=3)
    path.unlink(missing_ok=True)
    logger.info(f"Ingested activity file {file_name}: {result.get('status')}", extra={"task_id": str(self.request.id)})
    return result
