"""
Owner resolution for incoming activities, and linking of external accounts.

The OAuth handshake itself happens elsewhere; by the time ``link_external_account``
is called the external id is known and only needs to be recorded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, ValidationError
from models import User

logger = logging.getLogger(__name__)

PROVIDER_GARMIN = "garmin"
PROVIDER_ZWIFT = "zwift"

# Which activity source each provider's account id resolves.
PROVIDER_SOURCES = {
    PROVIDER_GARMIN: "wearable_push",
    PROVIDER_ZWIFT: "uploaded_file",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_garmin_owner(
    db: Session,
    garmin_user_id: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Optional[User]:
    if access_token:
        user = db.query(User).filter(User.garmin_access_token == access_token).first()
        if user:
            return user
    if garmin_user_id:
        return db.query(User).filter(User.garmin_user_id == str(garmin_user_id)).first()
    return None


def resolve_zwift_owner(db: Session, zwift_user_id: Optional[str]) -> Optional[User]:
    if not zwift_user_id:
        return None
    return db.query(User).filter(User.zwift_user_id == str(zwift_user_id)).first()


def linked_external_ids(user: User) -> List[tuple[str, str]]:
    """(source, external_user_id) pairs the user's activities may have arrived under."""
    pairs = []
    if user.garmin_user_id:
        pairs.append((PROVIDER_SOURCES[PROVIDER_GARMIN], user.garmin_user_id))
    if user.zwift_user_id:
        pairs.append((PROVIDER_SOURCES[PROVIDER_ZWIFT], user.zwift_user_id))
    return pairs


def link_external_account(
    db: Session,
    user_id: UUID,
    provider: str,
    external_user_id: str,
    access_token: Optional[str] = None,
) -> List[UUID]:
    """
    Record the external id on the user and run the reconciliation pass.

    Returns ids of activities promoted from awaiting_owner to owned; the
    caller is responsible for handing them to the aggregator.
    """
    from services.reconciliation import reconcile_unresolved_activities

    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User", str(user_id))

    external_user_id = (external_user_id or "").strip()
    if not external_user_id:
        raise ValidationError("external_user_id is required", field="external_user_id")

    if provider == PROVIDER_GARMIN:
        user.garmin_user_id = external_user_id
        if access_token:
            user.garmin_access_token = access_token
    elif provider == PROVIDER_ZWIFT:
        user.zwift_user_id = external_user_id
    else:
        raise ValidationError(f"Unsupported provider: {provider}", field="provider")

    db.flush()
    logger.info(f"Linked {provider} account {external_user_id} to user {user.id}")

    promoted = reconcile_unresolved_activities(db, user)
    db.commit()
    return promoted
