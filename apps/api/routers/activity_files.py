"""
Activity file uploads (FIT) from trusted uploaders.

Files are written under UPLOADS_DIR and decoded asynchronously; owners are
resolved from the account id embedded in the file, so an upload may sit
awaiting its owner until the account is linked.
"""

from pathlib import Path
from uuid import uuid4

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.exceptions import PayloadTooLargeError, ServiceUnavailableError, ValidationError
from core.security import require_internal_secret, require_upload_secret
from schemas import ActivityFileUploadResponse, ReconciliationSweepResponse
from services.reconciliation import reconcile_all_unresolved
from tasks.activity_file_tasks import ingest_activity_file_task
from tasks.notification_tasks import aggregate_activities_task
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/activity-files", tags=["activity-files"])

ACTIVITY_FILES_DIRNAME = "activity_files"
ALLOWED_EXTENSIONS = (".fit",)


def _safe_filename(name: str) -> str:
    base = Path(name or "").name
    keep = [ch if (ch.isalnum() or ch in (".", "_", "-")) else "_" for ch in base]
    return "".join(keep)[:180] or "activity.fit"


@router.post("/upload", response_model=ActivityFileUploadResponse, dependencies=[Depends(require_upload_secret)])
async def upload_activity_file(file: UploadFile = File(...)):
    file_name = _safe_filename(file.filename)
    if not file_name.lower().endswith(ALLOWED_EXTENSIONS):
        raise ValidationError("Only .fit files are accepted", field="file")

    upload_dir = Path(settings.UPLOADS_DIR) / ACTIVITY_FILES_DIRNAME
    upload_dir.mkdir(parents=True, exist_ok=True)
    stored_path = upload_dir / f"{uuid4().hex}_{file_name}"

    total = 0
    try:
        with stored_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > settings.ACTIVITY_FILE_MAX_BYTES:
                    raise PayloadTooLargeError(settings.ACTIVITY_FILE_MAX_BYTES)
                out.write(chunk)
    except PayloadTooLargeError:
        stored_path.unlink(missing_ok=True)
        raise
    finally:
        await file.close()

    if total == 0:
        stored_path.unlink(missing_ok=True)
        raise ValidationError("Uploaded file is empty", field="file")

    try:
        result = ingest_activity_file_task.delay(str(stored_path), file_name)
    except Exception as e:
        # Nothing else would ever pick the file up; drop it and let the uploader retry.
        logger.error(f"Could not enqueue activity file {file_name}: {e}")
        stored_path.unlink(missing_ok=True)
        raise ServiceUnavailableError("Could not queue the file for processing, retry later")

    logger.info(f"Queued activity file {file_name} ({total} bytes)", extra={"task_id": str(result.id)})
    return ActivityFileUploadResponse(status="queued", file_name=file_name, size_bytes=total, task_id=str(result.id))


@router.post("/reprocess", response_model=ReconciliationSweepResponse, dependencies=[Depends(require_internal_secret)])
def reprocess_unresolved_files(db: Session = Depends(get_db)):
    """Re-run owner reconciliation for every activity still awaiting its owner."""
    result = reconcile_all_unresolved(db)
    if result["activity_ids"]:
        try:
            aggregate_activities_task.delay([str(a) for a in result["activity_ids"]])
        except Exception as e:
            # Promoted activities are owned and unaggregated; the unaggregated sweep applies them.
            logger.warning(f"Could not enqueue aggregation of {len(result['activity_ids'])} reconciled activities: {e}")
    return ReconciliationSweepResponse(users_checked=result["users_checked"], reconciled=result["reconciled"])
