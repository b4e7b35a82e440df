"""
Per-notification pipeline run inside one Celery worker:

    claim -> normalize -> record outcome (+commit) -> aggregate new activities

Aggregation runs in the same worker right after the notification commit, so
an activity is never applied before it is durably stored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.orm import Session

from models import WebhookNotification
from services.activity_normalizer import (
    OUTCOME_PERMANENT,
    OUTCOME_SUCCESS,
    normalize_notification,
)
from services.challenge_progress import AggregationConflictError, apply_activity
from services.garmin_client import fetch_callback_bytes, fetch_callback_json
from services.retry_scheduler import (
    ClaimLostError,
    claim_notification,
    record_permanent_failure,
    record_success,
    record_transient_failure,
    release_claim,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aggregate_activities(db: Session, activity_ids) -> Dict[str, int]:
    """Apply each activity; a conflict on one never blocks the rest."""
    applied = 0
    deferred = 0
    for activity_id in activity_ids:
        try:
            if apply_activity(db, activity_id):
                applied += 1
        except AggregationConflictError as e:
            deferred += 1
            logger.warning(f"{e}; left for the unaggregated sweep")
    return {"applied": applied, "deferred": deferred}


def process_notification(
    db: Session,
    notification_id: UUID,
    fetch_json: Callable[[str], Any] = fetch_callback_json,
    fetch_bytes: Callable[[str], bytes] = fetch_callback_bytes,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or _utcnow()
    claimed_at = claim_notification(db, notification_id, now=now)
    if claimed_at is None:
        return {"status": "skipped", "notification_id": str(notification_id)}

    notification = db.get(WebhookNotification, notification_id, populate_existing=True)

    try:
        outcome = normalize_notification(db, notification, fetch_json=fetch_json, fetch_bytes=fetch_bytes)
    except SoftTimeLimitExceeded:
        logger.warning(f"Notification {notification_id} hit the task time limit")
        db.rollback()
        notification = db.get(WebhookNotification, notification_id, populate_existing=True)
        record_transient_failure(db, notification, claimed_at, "Timed out", now=now)
        db.commit()
        raise
    except (KeyboardInterrupt, SystemExit):
        # Worker shutdown (Celery raises SystemExit on cold shutdown): hand the row back uncounted.
        logger.warning(f"Worker stopping while processing notification {notification_id}; releasing claim")
        db.rollback()
        release_claim(db, notification_id, claimed_at)
        raise
    except Exception as e:
        # Anything unexpected counts as transient so the row is retried, not lost.
        logger.exception(f"Unexpected error normalizing notification {notification_id}")
        db.rollback()
        notification = db.get(WebhookNotification, notification_id, populate_existing=True)
        record_transient_failure(db, notification, claimed_at, f"Unexpected error: {e}", now=now)
        db.commit()
        return {"status": "failed", "notification_id": str(notification_id), "error": str(e)}

    try:
        if outcome.status == OUTCOME_SUCCESS:
            record_success(db, notification, claimed_at, now=now)
        elif outcome.status == OUTCOME_PERMANENT:
            notification = db.get(WebhookNotification, notification_id, populate_existing=True)
            record_permanent_failure(db, notification, claimed_at, outcome.error)
        else:
            notification = db.get(WebhookNotification, notification_id, populate_existing=True)
            record_transient_failure(db, notification, claimed_at, outcome.error, now=now)
        db.commit()
    except ClaimLostError:
        db.rollback()
        logger.warning(f"Claim on notification {notification_id} expired before completion; discarding result")
        return {"status": "claim_lost", "notification_id": str(notification_id)}

    result: Dict[str, Any] = {"notification_id": str(notification_id), **outcome.to_dict()}
    if outcome.status == OUTCOME_SUCCESS and outcome.created_activity_ids:
        result["aggregation"] = aggregate_activities(db, outcome.created_activity_ids)
    return result
