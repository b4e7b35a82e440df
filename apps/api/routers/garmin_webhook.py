"""
Garmin Webhook Router

Receives ping and push notifications. Every delivery is stored verbatim and
answered with 200 whatever happens next; the platform would otherwise
back off and eventually disable the subscription.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.config import settings
from core.database import get_db
from core.security import require_internal_secret
from schemas import ProcessFailedResponse, WebhookAck, WebhookNotificationResponse
from services.retry_scheduler import list_failed_notifications, requeue_failed_notifications
from services.webhook_intake import DeliveryMode, receive_notification
from tasks.notification_tasks import process_notification_task, sweep_webhook_notifications_task
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/garmin/webhook", tags=["garmin-webhook"])


async def _accept(request: Request, kind: str, delivery: DeliveryMode, db: Session) -> WebhookAck:
    body_bytes = await request.body()
    try:
        body = body_bytes.decode("utf-8")
    except UnicodeDecodeError as e:
        # Stored payloads are the exact body; a non-UTF-8 body cannot be kept verbatim.
        logger.error(f"Rejected Garmin {delivery.value} '{kind}': body is not UTF-8 ({len(body_bytes)} bytes): {e}")
        return WebhookAck(status="not_stored")

    if settings.GARMIN_WEBHOOK_CLIENT_HEADER.lower() not in request.headers:
        logger.warning(f"Garmin {delivery.value} for '{kind}' without {settings.GARMIN_WEBHOOK_CLIENT_HEADER} header")

    try:
        notification_id = receive_notification(db, kind, body, delivery)
    except Exception:
        # Still 200: an error response only makes the platform resend into the same failure.
        logger.exception(f"Failed to store Garmin {delivery.value} notification '{kind}' ({len(body)} bytes)")
        db.rollback()
        return WebhookAck(status="not_stored")

    try:
        process_notification_task.delay(str(notification_id))
    except Exception as e:
        logger.warning(f"Could not enqueue notification {notification_id}, retry sweep will pick it up: {e}")

    return WebhookAck(status="accepted", notification_id=notification_id)


@router.post("/ping/{kind}", response_model=WebhookAck)
async def receive_ping(kind: str, request: Request, db: Session = Depends(get_db)):
    """Ping delivery: items carry a callbackURL the worker fetches later."""
    return await _accept(request, kind, DeliveryMode.PING, db)


@router.post("/push/{kind}", response_model=WebhookAck)
async def receive_push(kind: str, request: Request, db: Session = Depends(get_db)):
    """Push delivery: the activity data is in the body."""
    return await _accept(request, kind, DeliveryMode.PUSH, db)


@router.get("/failed", response_model=List[WebhookNotificationResponse], dependencies=[Depends(require_internal_secret)])
def list_failed(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    """Poison and permanently failed notifications awaiting manual inspection."""
    return list_failed_notifications(db, limit=limit)


@router.post("/process-failed", response_model=ProcessFailedResponse, dependencies=[Depends(require_internal_secret)])
def process_failed(
    include_permanent: bool = Query(False, description="Also requeue rows that failed permanently"),
    db: Session = Depends(get_db),
):
    """Requeue failed notifications and sweep every eligible one now instead of batch by batch."""
    requeued = requeue_failed_notifications(db, include_permanent=include_permanent)
    try:
        sweep_webhook_notifications_task.delay(drain=True)
        enqueued = True
    except Exception as e:
        logger.error(f"Could not enqueue retry sweep: {e}")
        enqueued = False
    return ProcessFailedResponse(requeued=requeued, sweep_enqueued=enqueued)
