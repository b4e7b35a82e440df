"""
Reconciliation of activities that arrived before their owner was known.

Uploaded files (and pushes from not-yet-linked accounts) are stored as
``awaiting_owner`` with the source's account handle. Once that handle is
linked to a user, this pass promotes the rows to ``owned`` so the aggregator
can count them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import CanonicalActivity, User
from services.account_linking import linked_external_ids

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def reconcile_unresolved_activities(db: Session, user: User, now: Optional[datetime] = None) -> List[UUID]:
    """
    Promote every awaiting_owner activity whose (source, external_user_id)
    matches one of the user's linked accounts. Flushes; does not commit.
    """
    now = now or _utcnow()
    pairs = linked_external_ids(user)
    if not pairs:
        return []

    pending = (
        db.query(CanonicalActivity)
        .filter(
            CanonicalActivity.owner_status == "awaiting_owner",
            or_(*[
                (CanonicalActivity.source == source) & (CanonicalActivity.external_user_id == ext_id)
                for source, ext_id in pairs
            ]),
        )
        .order_by(CanonicalActivity.start_time.asc())
        .all()
    )

    promoted: List[UUID] = []
    for activity in pending:
        activity.user_id = user.id
        activity.owner_status = "owned"
        activity.owner_resolved_at = now
        promoted.append(activity.id)

    if promoted:
        db.flush()
        logger.info(
            f"Reconciled {len(promoted)} activities for user {user.id}",
            extra={"user_id": str(user.id), "reconciled": len(promoted)},
        )
    return promoted


def reconcile_all_unresolved(db: Session) -> Dict[str, Any]:
    """
    Bulk sweep: re-run reconciliation for every user who could own a pending
    activity. Commits once at the end.
    """
    pending_pairs = (
        db.query(CanonicalActivity.source, CanonicalActivity.external_user_id)
        .filter(
            CanonicalActivity.owner_status == "awaiting_owner",
            CanonicalActivity.external_user_id.is_not(None),
        )
        .distinct()
        .all()
    )

    garmin_ids = {ext for source, ext in pending_pairs if source == "wearable_push"}
    zwift_ids = {ext for source, ext in pending_pairs if source == "uploaded_file"}
    if not garmin_ids and not zwift_ids:
        return {"users_checked": 0, "reconciled": 0, "activity_ids": []}

    users = (
        db.query(User)
        .filter(or_(User.garmin_user_id.in_(sorted(garmin_ids)), User.zwift_user_id.in_(sorted(zwift_ids))))
        .all()
    )

    activity_ids: List[UUID] = []
    for user in users:
        activity_ids.extend(reconcile_unresolved_activities(db, user))
    db.commit()

    return {"users_checked": len(users), "reconciled": len(activity_ids), "activity_ids": activity_ids}
