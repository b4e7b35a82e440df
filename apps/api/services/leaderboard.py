"""
Leaderboard ranking for a challenge.

Order: tracked total descending, then earlier join first, then participant id
so the order is fully deterministic. Positions are 1..n with no shared ranks,
assigned after sorting.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.exceptions import NotFoundError
from models import Challenge, ChallengeParticipant, User
from services.challenge_progress import tracked_total


@dataclass
class LeaderboardEntry:
    position: int
    participant_id: UUID
    user_id: UUID
    username: Optional[str]
    total: Decimal
    joined_at: datetime
    is_completed: bool
    completed_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "user_id": str(self.user_id),
            "username": self.username,
            "total": float(self.total),
            "joined_at": self.joined_at.isoformat(),
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def sort_participants(participants: List[ChallengeParticipant], challenge_type: str) -> List[ChallengeParticipant]:
    return sorted(
        participants,
        key=lambda p: (-tracked_total(p, challenge_type), p.joined_at, str(p.id)),
    )


def rank_participants(db: Session, challenge_id: UUID) -> List[LeaderboardEntry]:
    challenge = db.get(Challenge, challenge_id)
    if challenge is None:
        raise NotFoundError("Challenge", str(challenge_id))

    rows = (
        db.query(ChallengeParticipant, User.username)
        .join(User, User.id == ChallengeParticipant.user_id)
        .filter(ChallengeParticipant.challenge_id == challenge_id)
        .all()
    )
    usernames = {participant.id: username for participant, username in rows}
    ordered = sort_participants([participant for participant, _ in rows], challenge.challenge_type)

    return [
        LeaderboardEntry(
            position=position,
            participant_id=p.id,
            user_id=p.user_id,
            username=usernames.get(p.id),
            total=tracked_total(p, challenge.challenge_type),
            joined_at=p.joined_at,
            is_completed=p.is_completed,
            completed_at=p.completed_at,
        )
        for position, p in enumerate(ordered, start=1)
    ]
