"""
Garmin webhook intake.

The only job here is durability: the delivery is written verbatim and
committed before anything tries to read it. Interpretation happens later in
the worker (see services/activity_normalizer.py).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from models import WebhookNotification

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ACTIVITY_SUMMARY = "activity_summary"
    ACTIVITY_DETAIL = "activity_detail"
    ACTIVITY_FILE = "activity_file"
    MANUALLY_UPDATED = "manually_updated"
    MOVE_DETECTED = "move_detected"
    UNKNOWN = "unknown"


class DeliveryMode(str, Enum):
    PING = "ping"
    PUSH = "push"


# Keys are discriminators with case, dashes and underscores stripped.
_KIND_ALIASES = {
    "activities": NotificationKind.ACTIVITY_SUMMARY,
    "activity": NotificationKind.ACTIVITY_SUMMARY,
    "activitysummary": NotificationKind.ACTIVITY_SUMMARY,
    "activitysummaries": NotificationKind.ACTIVITY_SUMMARY,
    "activitydetails": NotificationKind.ACTIVITY_DETAIL,
    "activitydetail": NotificationKind.ACTIVITY_DETAIL,
    "activityfiles": NotificationKind.ACTIVITY_FILE,
    "activityfile": NotificationKind.ACTIVITY_FILE,
    "manuallyupdatedactivities": NotificationKind.MANUALLY_UPDATED,
    "manuallyupdated": NotificationKind.MANUALLY_UPDATED,
    "moveiqactivities": NotificationKind.MOVE_DETECTED,
    "moveiq": NotificationKind.MOVE_DETECTED,
    "movedetected": NotificationKind.MOVE_DETECTED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_notification_kind(kind_raw: Optional[str]) -> NotificationKind:
    if not kind_raw:
        return NotificationKind.UNKNOWN
    key = kind_raw.strip().lower().replace("-", "").replace("_", "")
    return _KIND_ALIASES.get(key, NotificationKind.UNKNOWN)


def receive_notification(
    db: Session,
    kind_raw: str,
    raw_body: str,
    delivery: DeliveryMode = DeliveryMode.PUSH,
    now: Optional[datetime] = None,
) -> UUID:
    """
    Persist one delivery exactly as received and commit.

    The payload is not parsed; an unrecognised kind is stored as ``unknown``
    so the normalizer can mark it permanently failed with the raw text intact.
    """
    kind = parse_notification_kind(kind_raw)
    notification = WebhookNotification(
        kind=kind.value,
        kind_raw=kind_raw or "",
        delivery=DeliveryMode(delivery).value,
        raw_payload=raw_body if raw_body is not None else "",
        received_at=now or _utcnow(),
        status="unprocessed",
        attempt_count=0,
    )
    db.add(notification)
    db.commit()

    logger.info(
        "Stored webhook notification",
        extra={
            "notification_id": str(notification.id),
            "kind": kind.value,
            "kind_raw": kind_raw,
            "delivery": notification.delivery,
            "payload_bytes": len(notification.raw_payload),
        },
    )
    if kind is NotificationKind.UNKNOWN:
        logger.warning(f"Unrecognised webhook kind '{kind_raw}' stored as unknown ({notification.id})")
    return notification.id
