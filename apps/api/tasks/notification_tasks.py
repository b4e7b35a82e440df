"""
Celery tasks for the webhook pipeline.

The webhook handler enqueues ``process_notification_task`` right after the
raw payload is committed; beat runs ``sweep_webhook_notifications_task`` to
pick up anything the hand-off missed and failed rows that are due again.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List
from uuid import UUID

from celery import Task

from core.config import settings
from core.database import get_db_sync
from tasks import celery_app

logger = logging.getLogger(__name__)

# Activities younger than this are probably still being aggregated by their own task.
UNAGGREGATED_GRACE_PERIOD = timedelta(minutes=5)


@celery_app.task(
    name="tasks.process_notification",
    bind=True,
    soft_time_limit=settings.NOTIFICATION_TASK_SOFT_TIME_LIMIT_S,
    time_limit=settings.NOTIFICATION_TASK_SOFT_TIME_LIMIT_S + 30,
)
def process_notification_task(self: Task, notification_id: str) -> Dict:
    """
    Claim, normalize and aggregate one stored notification.

    Safe to enqueue more than once: only the worker that wins the claim does
    any work, the others return ``skipped``.
    """
    from services.notification_pipeline import process_notification

    db = get_db_sync()
    try:
        result = process_notification(db, UUID(notification_id))
        logger.info(
            f"Notification {notification_id}: {result.get('status')}",
            extra={"task_id": str(self.request.id), "notification_id": notification_id},
        )
        return result
    finally:
        db.close()


@celery_app.task(name="tasks.sweep_webhook_notifications", bind=True)
def sweep_webhook_notifications_task(self: Task, drain: bool = False) -> Dict:
    """
    Enqueue eligible notifications for the worker pool.

    A beat tick enqueues at most one batch. ``drain`` (the manual reprocessing
    trigger) keeps paging until every eligible notification is enqueued.
    """
    from services.retry_scheduler import (
        fail_abandoned_claims,
        iter_eligible_notification_batches,
        select_eligible_notification_ids,
    )

    db = get_db_sync()
    enqueued = 0
    try:
        poisoned = fail_abandoned_claims(db)
        if drain:
            batches = iter_eligible_notification_batches(db, batch_size=settings.RETRY_SCAN_BATCH_SIZE)
        else:
            batches = iter([select_eligible_notification_ids(db, limit=settings.RETRY_SCAN_BATCH_SIZE)])
        for ids in batches:
            for notification_id in ids:
                process_notification_task.delay(str(notification_id))
            enqueued += len(ids)
    finally:
        db.close()

    if enqueued or poisoned:
        logger.info(
            f"Retry sweep enqueued {enqueued} notifications, poisoned {poisoned} abandoned claims",
            extra={"task_id": str(self.request.id), "drain": drain},
        )
    return {"enqueued": enqueued, "poisoned": poisoned}


@celery_app.task(name="tasks.aggregate_activities")
def aggregate_activities_task(activity_ids: List[str]) -> Dict:
    from services.notification_pipeline import aggregate_activities

    db = get_db_sync()
    try:
        return aggregate_activities(db, [UUID(a) for a in activity_ids])
    finally:
        db.close()


@celery_app.task(name="tasks.sweep_unaggregated_activities")
def sweep_unaggregated_activities_task() -> Dict:
    from services.challenge_progress import list_unaggregated_activity_ids
    from services.notification_pipeline import aggregate_activities

    db = get_db_sync()
    try:
        cutoff = datetime.now(timezone.utc) - UNAGGREGATED_GRACE_PERIOD
        ids = list_unaggregated_activity_ids(db, older_than=cutoff)
        if not ids:
            return {"applied": 0, "deferred": 0}
        logger.info(f"Re-aggregating {len(ids)} activities left unaggregated")
        return aggregate_activities(db, ids)
    finally:
        db.close()


@celery_app.task(name="tasks.reconcile_unresolved_activities")
def reconcile_unresolved_activities_task() -> Dict:
    """Bulk reconciliation sweep; promoted activities are aggregated in the same run."""
    from services.notification_pipeline import aggregate_activities
    from services.reconciliation import reconcile_all_unresolved

    db = get_db_sync()
    try:
        result = reconcile_all_unresolved(db)
        aggregation = aggregate_activities(db, result["activity_ids"]) if result["activity_ids"] else {}
        return {
            "users_checked": result["users_checked"],
            "reconciled": result["reconciled"],
            "aggregation": aggregation,
        }
    finally:
        db.close()


@celery_app.task(name="tasks.backfill_garmin_activities", bind=True)
def backfill_garmin_activities_task(self: Task) -> Dict:
    """Daily catch-up pull for every user with a Garmin token; new activities are aggregated in the same run."""
    from services.activity_backfill import backfill_user_activities, users_with_garmin_access
    from services.notification_pipeline import aggregate_activities

    db = get_db_sync()
    users = 0
    created = 0
    applied = 0
    try:
        for user in users_with_garmin_access(db):
            users += 1
            result = backfill_user_activities(db, user)
            if result["created_activity_ids"]:
                created += len(result["created_activity_ids"])
                applied += aggregate_activities(db, result["created_activity_ids"])["applied"]
    finally:
        db.close()

    logger.info(
        f"Garmin backfill: {users} users, {created} new activities",
        extra={"task_id": str(self.request.id), "users": users, "created": created},
    )
    return {"users": users, "created": created, "applied": applied}
