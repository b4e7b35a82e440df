"""
Manual activity entry.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import APIException, NotFoundError, ValidationError
from core.security import require_internal_secret
from models import User
from schemas import ManualActivityCreate, NormalizationResponse
from services.activity_normalizer import OUTCOME_PERMANENT, OUTCOME_TRANSIENT, normalize_manual_entry
from services.notification_pipeline import aggregate_activities

router = APIRouter(prefix="/v1/activities", tags=["activities"], dependencies=[Depends(require_internal_secret)])


@router.post("/manual", response_model=NormalizationResponse, status_code=status.HTTP_201_CREATED)
def create_manual_activity(body: ManualActivityCreate, db: Session = Depends(get_db)):
    """
    Record a manually entered workout and apply it to the user's challenges.

    Re-sending the same ``client_activity_id`` is a no-op (reported as a duplicate).
    """
    if not db.get(User, body.user_id):
        raise NotFoundError("User", str(body.user_id))

    outcome = normalize_manual_entry(db, body.user_id, body.model_dump(exclude={"user_id"}))
    if outcome.status == OUTCOME_PERMANENT:
        raise ValidationError(outcome.error or "Invalid activity")
    if outcome.status == OUTCOME_TRANSIENT:
        raise APIException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.error or "Try again", error_code="UNAVAILABLE")

    # One activity: aggregate inline so the caller sees updated progress immediately.
    aggregate_activities(db, outcome.created_activity_ids)
    return NormalizationResponse(**outcome.to_dict())
