"""
Challenge Progress Aggregator

Folds owned canonical activities into per-participant challenge totals.

Guarantees:
- at most once per activity: ``canonical_activity.aggregated_at`` is flipped by
  a conditional UPDATE in the same transaction as the progress writes
- no lost updates: ``challenge_participant.version`` is an optimistic lock;
  a stale write raises StaleDataError and the whole application is retried
- order independence: contributions are quantised Decimals, so totals are the
  same whatever order activities arrive in
- completion is recorded once, by the activity whose contribution first takes
  the total to or past the target
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from core.config import settings
from core.exceptions import NotFoundError
from models import CanonicalActivity, Challenge, ChallengeParticipant, ProgressContribution

logger = logging.getLogger(__name__)

QUANTUM = Decimal("0.001")
ZERO = Decimal("0")

# challenge_type -> (participant total column, challenge target column)
DIMENSION_FIELDS: Dict[str, tuple[str, str]] = {
    "distance": ("cumulative_distance_km", "target_distance_km"),
    "elevation": ("cumulative_elevation_m", "target_elevation_m"),
    "duration": ("cumulative_duration_min", "target_duration_min"),
}


class AggregationConflictError(Exception):
    """Optimistic-lock retries exhausted; the activity stays unaggregated for the next sweep."""


@dataclass
class DailyProgressPoint:
    date: date
    value: Decimal
    cumulative: Decimal

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "value": float(self.value), "cumulative": float(self.cumulative)}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _quantize(value) -> Decimal:
    return Decimal(str(value)).quantize(QUANTUM, rounding=ROUND_HALF_UP)


def _dimension(challenge_type: str) -> tuple[str, str]:
    try:
        return DIMENSION_FIELDS[challenge_type]
    except KeyError:
        raise ValueError(f"Unsupported challenge type: {challenge_type!r}")


def activity_contribution(activity: CanonicalActivity, challenge_type: str) -> Decimal:
    """Kilometres, metres of climbing or minutes, depending on the tracked dimension."""
    _dimension(challenge_type)
    if challenge_type == "distance":
        raw = (activity.distance_m or 0) / 1000.0
    elif challenge_type == "elevation":
        raw = activity.elevation_gain_m or 0
    else:
        raw = (activity.duration_s or 0) / 60.0
    return _quantize(raw)


def tracked_total(participant: ChallengeParticipant, challenge_type: str) -> Decimal:
    total_field, _ = _dimension(challenge_type)
    return Decimal(getattr(participant, total_field) or 0)


def challenge_target(challenge: Challenge) -> Optional[Decimal]:
    _, target_field = _dimension(challenge.challenge_type)
    target = getattr(challenge, target_field)
    return Decimal(target) if target is not None else None


def _utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


def challenge_date_range(challenge: Challenge) -> tuple[date, date]:
    """Inclusive UTC calendar days covered by the challenge."""
    return _utc_day(challenge.start_date), _utc_day(challenge.end_date)


def activity_in_challenge_window(challenge: Challenge, start_time: datetime) -> bool:
    first_day, last_day = challenge_date_range(challenge)
    return first_day <= _utc_day(start_time) <= last_day


def join_challenge(
    db: Session,
    challenge_id: UUID,
    user_id: UUID,
    joined_at: Optional[datetime] = None,
) -> ChallengeParticipant:
    """Create the zeroed progress row (idempotent) and commit."""
    existing = (
        db.query(ChallengeParticipant)
        .filter(ChallengeParticipant.challenge_id == challenge_id, ChallengeParticipant.user_id == user_id)
        .first()
    )
    if existing:
        return existing

    if not db.get(Challenge, challenge_id):
        raise NotFoundError("Challenge", str(challenge_id))

    participant = ChallengeParticipant(
        challenge_id=challenge_id,
        user_id=user_id,
        joined_at=joined_at or _utcnow(),
        cumulative_distance_km=ZERO,
        cumulative_elevation_m=ZERO,
        cumulative_duration_min=ZERO,
        is_completed=False,
    )
    db.add(participant)
    db.commit()
    return participant


def _claim_activity(db: Session, activity: CanonicalActivity, now: datetime) -> bool:
    stmt = (
        update(CanonicalActivity)
        .where(
            CanonicalActivity.id == activity.id,
            CanonicalActivity.aggregated_at.is_(None),
            CanonicalActivity.owner_status == "owned",
        )
        .values(aggregated_at=now)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        return False
    set_committed_value(activity, "aggregated_at", now)
    return True


def _apply_to_participant(
    db: Session,
    participant: ChallengeParticipant,
    challenge: Challenge,
    activity: CanonicalActivity,
    now: datetime,
) -> bool:
    if not challenge.is_active:
        return False
    if not activity_in_challenge_window(challenge, activity.start_time):
        return False

    total_field, _ = _dimension(challenge.challenge_type)
    value = activity_contribution(activity, challenge.challenge_type)
    new_total = _quantize(Decimal(getattr(participant, total_field) or 0) + value)
    setattr(participant, total_field, new_total)

    if participant.last_activity_at is None or activity.start_time > participant.last_activity_at:
        participant.last_activity_at = activity.start_time
    participant.last_updated = now

    target = challenge_target(challenge)
    if not participant.is_completed and target is not None and target > 0 and new_total >= target:
        participant.is_completed = True
        participant.completed_at = activity.start_time
        logger.info(
            f"User {participant.user_id} completed challenge {challenge.id}",
            extra={"challenge_id": str(challenge.id), "user_id": str(participant.user_id), "total": str(new_total)},
        )

    db.add(ProgressContribution(
        challenge_id=challenge.id,
        participant_id=participant.id,
        activity_id=activity.id,
        value=value,
        activity_start_time=activity.start_time,
        applied_at=now,
    ))
    return True


def _apply_once(db: Session, activity_id: UUID, now: datetime) -> List[ChallengeParticipant]:
    activity = db.get(CanonicalActivity, activity_id, populate_existing=True)
    if activity is None:
        logger.warning(f"Aggregation skipped: activity {activity_id} not found")
        return []
    if activity.owner_status != "owned" or activity.user_id is None:
        logger.debug(f"Aggregation skipped: activity {activity_id} has no owner yet")
        return []
    if not _claim_activity(db, activity, now):
        logger.info(f"Aggregation skipped: activity {activity_id} already aggregated")
        return []

    participants = (
        db.query(ChallengeParticipant)
        .filter(ChallengeParticipant.user_id == activity.user_id)
        .populate_existing()
        .all()
    )

    updated: List[ChallengeParticipant] = []
    for participant in participants:
        challenge = db.get(Challenge, participant.challenge_id)
        if challenge is None:
            logger.error(f"Challenge {participant.challenge_id} missing for participant {participant.id}; skipping")
            continue
        try:
            if _apply_to_participant(db, participant, challenge, activity, now):
                updated.append(participant)
        except (ValueError, ArithmeticError) as e:
            logger.error(
                f"Failed to apply activity {activity.id} to challenge {challenge.id}: {e}",
                extra={"activity_id": str(activity.id), "challenge_id": str(challenge.id)},
            )

    db.flush()
    return updated


def apply_activity(db: Session, activity_id: UUID, now: Optional[datetime] = None) -> List[ChallengeParticipant]:
    """
    Apply one owned activity to every qualifying challenge of its owner.

    Commits on success. Returns the participant rows that changed; an empty
    list when the activity was already aggregated, has no owner yet, or falls
    outside every challenge window.
    """
    for attempt in range(settings.AGGREGATION_MAX_RETRIES):
        try:
            updated = _apply_once(db, activity_id, now or _utcnow())
            db.commit()
            return updated
        except StaleDataError:
            db.rollback()
            logger.warning(
                f"Concurrent progress update while applying activity {activity_id} "
                f"(attempt {attempt + 1}/{settings.AGGREGATION_MAX_RETRIES}), retrying"
            )
        except IntegrityError as e:
            # A contribution row for this (participant, activity) already exists.
            db.rollback()
            logger.warning(f"Activity {activity_id} already contributed: {e.orig}")
            return []
    raise AggregationConflictError(f"Could not apply activity {activity_id} after {settings.AGGREGATION_MAX_RETRIES} attempts")


def get_challenge_progress(db: Session, challenge_id: UUID) -> List[ChallengeParticipant]:
    return (
        db.query(ChallengeParticipant)
        .filter(ChallengeParticipant.challenge_id == challenge_id)
        .order_by(ChallengeParticipant.joined_at.asc())
        .all()
    )


def list_unaggregated_activity_ids(db: Session, older_than: datetime, limit: int = 100) -> List[UUID]:
    """Owned activities that never made it through aggregation (e.g. conflicts exhausted retries)."""
    rows = (
        db.query(CanonicalActivity.id)
        .filter(
            CanonicalActivity.owner_status == "owned",
            CanonicalActivity.aggregated_at.is_(None),
            CanonicalActivity.created_at < older_than,
        )
        .order_by(CanonicalActivity.start_time.asc())
        .limit(limit)
        .all()
    )
    return [r[0] for r in rows]


def build_daily_series(
    db: Session,
    challenge_id: UUID,
    user_id: UUID,
    today: Optional[date] = None,
) -> List[DailyProgressPoint]:
    """
    One point per UTC day from the challenge start to min(today, end),
    zero days included, with a running cumulative total. The last
    cumulative always equals the participant total.
    """
    challenge = db.get(Challenge, challenge_id)
    if challenge is None:
        raise NotFoundError("Challenge", str(challenge_id))
    participant = (
        db.query(ChallengeParticipant)
        .filter(ChallengeParticipant.challenge_id == challenge_id, ChallengeParticipant.user_id == user_id)
        .first()
    )
    if participant is None:
        raise NotFoundError("Participant", f"{challenge_id}/{user_id}")

    first_day, last_day = challenge_date_range(challenge)
    last_day = min(today or _utcnow().date(), last_day)
    if last_day < first_day:
        return []

    per_day: Dict[date, Decimal] = {}
    contributions = (
        db.query(ProgressContribution)
        .filter(ProgressContribution.participant_id == participant.id)
        .all()
    )
    for c in contributions:
        # Clock-skewed activities dated after today land on the last emitted day.
        day = min(_utc_day(c.activity_start_time), last_day)
        per_day[day] = per_day.get(day, ZERO) + Decimal(c.value)

    points: List[DailyProgressPoint] = []
    running = ZERO
    day = first_day
    while day <= last_day:
        value = _quantize(per_day.get(day, ZERO))
        running = _quantize(running + value)
        points.append(DailyProgressPoint(date=day, value=value, cumulative=running))
        day += timedelta(days=1)
    return points
