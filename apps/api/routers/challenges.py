"""
Challenge progress, daily series and leaderboard.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError
from core.security import require_internal_secret
from models import Challenge, ChallengeParticipant, User
from schemas import (
    DailyProgressPointResponse,
    DailySeriesResponse,
    LeaderboardEntryResponse,
    LeaderboardResponse,
    ParticipantProgressResponse,
)
from services.challenge_progress import build_daily_series, get_challenge_progress, join_challenge, tracked_total
from services.leaderboard import rank_participants

router = APIRouter(prefix="/v1/challenges", tags=["challenges"])


def _get_challenge(db: Session, challenge_id: UUID) -> Challenge:
    challenge = db.get(Challenge, challenge_id)
    if not challenge:
        raise NotFoundError("Challenge", str(challenge_id))
    return challenge


def _progress_response(p: ChallengeParticipant, challenge_type: str) -> ParticipantProgressResponse:
    return ParticipantProgressResponse(
        id=p.id,
        challenge_id=p.challenge_id,
        user_id=p.user_id,
        joined_at=p.joined_at,
        cumulative_distance_km=float(p.cumulative_distance_km or 0),
        cumulative_elevation_m=float(p.cumulative_elevation_m or 0),
        cumulative_duration_min=float(p.cumulative_duration_min or 0),
        current_total=float(tracked_total(p, challenge_type)),
        last_activity_at=p.last_activity_at,
        is_completed=p.is_completed,
        completed_at=p.completed_at,
    )


@router.post(
    "/{challenge_id}/participants/{user_id}",
    response_model=ParticipantProgressResponse,
    dependencies=[Depends(require_internal_secret)],
)
def join(challenge_id: UUID, user_id: UUID, db: Session = Depends(get_db)):
    """Create the participant's zeroed progress row (called by membership management)."""
    challenge = _get_challenge(db, challenge_id)
    if not db.get(User, user_id):
        raise NotFoundError("User", str(user_id))
    participant = join_challenge(db, challenge_id, user_id)
    return _progress_response(participant, challenge.challenge_type)


@router.get("/{challenge_id}/progress", response_model=List[ParticipantProgressResponse])
def list_progress(challenge_id: UUID, db: Session = Depends(get_db)):
    challenge = _get_challenge(db, challenge_id)
    return [_progress_response(p, challenge.challenge_type) for p in get_challenge_progress(db, challenge_id)]


@router.get("/{challenge_id}/leaderboard", response_model=LeaderboardResponse)
def leaderboard(challenge_id: UUID, db: Session = Depends(get_db)):
    challenge = _get_challenge(db, challenge_id)
    entries = rank_participants(db, challenge_id)
    return LeaderboardResponse(
        challenge_id=challenge_id,
        challenge_type=challenge.challenge_type,
        entries=[
            LeaderboardEntryResponse(
                position=e.position,
                user_id=e.user_id,
                username=e.username,
                total=float(e.total),
                joined_at=e.joined_at,
                is_completed=e.is_completed,
                completed_at=e.completed_at,
            )
            for e in entries
        ],
    )


@router.get("/{challenge_id}/participants/{user_id}/daily", response_model=DailySeriesResponse)
def daily_series(
    challenge_id: UUID,
    user_id: UUID,
    today: Optional[date] = Query(None, description="Override 'today' (UTC) for the series end"),
    db: Session = Depends(get_db),
):
    challenge = _get_challenge(db, challenge_id)
    points = build_daily_series(db, challenge_id, user_id, today=today)
    return DailySeriesResponse(
        challenge_id=challenge_id,
        user_id=user_id,
        challenge_type=challenge.challenge_type,
        points=[
            DailyProgressPointResponse(date=p.date, value=float(p.value), cumulative=float(p.cumulative))
            for p in points
        ],
    )
