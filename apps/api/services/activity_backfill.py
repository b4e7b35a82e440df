"""
Daily Garmin catch-up pull.

Webhook deliveries can be lost upstream. Once a day every user with a Garmin
token has the last few UTC days pulled one day at a time (the API caps a
window at 24 hours) and run through the normalizer. Dedup on
``(source, source_activity_id)`` makes re-pulling already delivered
activities a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ProcessingError
from models import User
from services.activity_normalizer import OUTCOME_SUCCESS, normalize_backfilled_summaries
from services.garmin_client import fetch_activity_summaries

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backfill_windows(now: datetime, days: int) -> List[tuple[datetime, datetime]]:
    """``[midnight - n days, +1 day)`` for n = 1..days, most recent first; today is left to the webhooks."""
    midnight = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    windows = []
    for offset in range(1, days + 1):
        start = midnight - timedelta(days=offset)
        windows.append((start, start + timedelta(days=1)))
    return windows


def users_with_garmin_access(db: Session) -> List[User]:
    return (
        db.query(User)
        .filter(User.garmin_access_token.is_not(None), User.garmin_access_token != "")
        .order_by(User.created_at.asc())
        .all()
    )


def backfill_user_activities(
    db: Session,
    user: User,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
    fetch: Optional[Callable[..., List[Any]]] = None,
) -> Dict[str, Any]:
    """
    Pull and store one user's recent activities.

    A failed day is logged and skipped; the next run covers it again while it
    is still inside the window.
    """
    now = now or _utcnow()
    days = settings.GARMIN_BACKFILL_DAYS if days is None else days
    fetch = fetch or fetch_activity_summaries
    created = []
    duplicates = 0
    failed_days = 0

    for start, end in backfill_windows(now, days):
        try:
            items = fetch(user.garmin_access_token, start, end)
        except ProcessingError as e:
            failed_days += 1
            logger.warning(f"Backfill fetch for user {user.id} on {start.date()} failed: {e.message}")
            continue
        if not items:
            continue

        outcome = normalize_backfilled_summaries(db, user, items, fallback_start=start)
        if outcome.status != OUTCOME_SUCCESS:
            failed_days += 1
            logger.warning(f"Backfill for user {user.id} on {start.date()} not stored: {outcome.error}")
            continue
        created.extend(outcome.created_activity_ids)
        duplicates += outcome.duplicates

    logger.info(
        f"Backfilled user {user.id}: {len(created)} new, {duplicates} already known",
        extra={"user_id": str(user.id), "created": len(created), "duplicates": duplicates, "failed_days": failed_days},
    )
    return {"created_activity_ids": created, "duplicates": duplicates, "failed_days": failed_days}
