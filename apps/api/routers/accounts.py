"""
External account linking.

Called by the platform once an OAuth handshake (or a manual pairing) has
produced the external account id. Linking triggers reconciliation of any
activities that arrived under that id before the link existed.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.database import get_db
from core.security import require_internal_secret
from schemas import AccountLinkRequest, AccountLinkResponse
from services.account_linking import link_external_account
from tasks.notification_tasks import aggregate_activities_task
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/accounts", tags=["accounts"], dependencies=[Depends(require_internal_secret)])


@router.post("/{user_id}/links", response_model=AccountLinkResponse)
def link_account(user_id: UUID, body: AccountLinkRequest, db: Session = Depends(get_db)):
    promoted = link_external_account(
        db,
        user_id,
        body.provider,
        body.external_user_id,
        access_token=body.access_token,
    )
    if promoted:
        try:
            aggregate_activities_task.delay([str(a) for a in promoted])
        except Exception as e:
            logger.warning(f"Could not enqueue aggregation for {len(promoted)} reconciled activities: {e}")
    return AccountLinkResponse(user_id=user_id, provider=body.provider, reconciled_activity_ids=promoted)
