from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, ForeignKey, Numeric, Text, String, Index, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, false
from core.database import Base
from core.types import UTCDateTime
import uuid


class User(Base):
    __tablename__ = "app_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    username = Column(String(100), unique=True, nullable=False)
    email = Column(Text, unique=True, nullable=True)

    # --- LINKED EXTERNAL ACCOUNTS ---
    # Set by the account-linking flow; used to resolve owners of incoming activities.
    garmin_user_id = Column(Text, nullable=True, unique=True)
    garmin_access_token = Column(Text, nullable=True, index=True)
    # Uploaded activity files identify their owner by this id.
    zwift_user_id = Column(Text, nullable=True, unique=True)

    participations = relationship("ChallengeParticipant", back_populates="user")


class Challenge(Base):
    """
    A time-boxed challenge tracking one dimension (distance, elevation, duration).

    Challenge CRUD lives elsewhere; this service only reads these rows.
    """
    __tablename__ = "challenge"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    # 'distance' | 'elevation' | 'duration'
    challenge_type = Column(Text, nullable=False, default="distance")
    start_date = Column(UTCDateTime, nullable=False)
    end_date = Column(UTCDateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Targets per dimension; only the tracked dimension's target drives completion.
    target_distance_km = Column(Numeric(14, 3), nullable=True)
    target_elevation_m = Column(Numeric(14, 3), nullable=True)
    target_duration_min = Column(Numeric(14, 3), nullable=True)

    participants = relationship("ChallengeParticipant", back_populates="challenge")

    __table_args__ = (
        CheckConstraint(
            "challenge_type IN ('distance', 'elevation', 'duration')",
            name="ck_challenge_type",
        ),
        CheckConstraint("end_date >= start_date", name="ck_challenge_date_range"),
    )


class ChallengeParticipant(Base):
    """
    Per-(challenge, user) running totals.

    Cumulative columns only ever grow and ``is_completed`` never reverts.
    ``version`` is an optimistic-concurrency counter: two workers applying
    activities to the same row cannot both commit a stale read.
    """
    __tablename__ = "challenge_participant"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id = Column(Uuid, ForeignKey("challenge.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("app_user.id"), nullable=False, index=True)
    joined_at = Column(UTCDateTime, nullable=False)

    cumulative_distance_km = Column(Numeric(14, 3), nullable=False, default=0)
    cumulative_elevation_m = Column(Numeric(14, 3), nullable=False, default=0)
    cumulative_duration_min = Column(Numeric(14, 3), nullable=False, default=0)
    last_activity_at = Column(UTCDateTime, nullable=True)

    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(UTCDateTime, nullable=True)
    last_updated = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    challenge = relationship("Challenge", back_populates="participants")
    user = relationship("User", back_populates="participations")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_participant_challenge_user"),
    )


class WebhookNotification(Base):
    """
    Raw webhook delivery, stored verbatim before any interpretation.

    Lifecycle: unprocessed -> in_flight -> processed | failed; failed rows go
    back to in_flight when the retry scheduler picks them up again. An
    in_flight row can be released back to unprocessed. processed is terminal.
    """
    __tablename__ = "webhook_notification"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # 'activity_summary' | 'activity_detail' | 'activity_file' | 'manually_updated' | 'move_detected' | 'unknown'
    kind = Column(Text, nullable=False)
    # Discriminator exactly as it arrived in the URL.
    kind_raw = Column(Text, nullable=False)
    # 'ping' | 'push'
    delivery = Column(Text, nullable=False, default="push")
    raw_payload = Column(Text, nullable=False)
    received_at = Column(UTCDateTime, nullable=False)

    status = Column(Text, nullable=False, default="unprocessed", server_default="unprocessed")
    processed_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(UTCDateTime, nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    is_permanent_failure = Column(Boolean, nullable=False, default=False, server_default=false())

    __table_args__ = (
        CheckConstraint(
            "status IN ('unprocessed', 'in_flight', 'processed', 'failed')",
            name="ck_webhook_notification_status",
        ),
        Index("ix_webhook_notification_status_next_retry", "status", "next_retry_at"),
        Index("ix_webhook_notification_received_at", "received_at"),
    )


class CanonicalActivity(Base):
    """
    One workout in the shared shape, whichever source it came from.

    Immutable once written apart from owner resolution (awaiting_owner ->
    owned) and the ``aggregated_at`` marker.
    """
    __tablename__ = "canonical_activity"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)

    user_id = Column(Uuid, ForeignKey("app_user.id"), nullable=True, index=True)
    # 'owned' | 'awaiting_owner'
    owner_status = Column(Text, nullable=False, default="owned")
    # Account handle at the source; used to resolve the owner later.
    external_user_id = Column(Text, nullable=True, index=True)
    owner_resolved_at = Column(UTCDateTime, nullable=True)

    # 'wearable_push' | 'uploaded_file' | 'manual'
    source = Column(Text, nullable=False)
    source_activity_id = Column(Text, nullable=False)
    notification_id = Column(Uuid, ForeignKey("webhook_notification.id"), nullable=True)

    category = Column(Text, nullable=False, default="other")
    activity_type = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    start_time = Column(UTCDateTime, nullable=False)
    duration_s = Column(Integer, nullable=True)
    distance_m = Column(Float, nullable=True)
    elevation_gain_m = Column(Float, nullable=True)
    avg_heart_rate = Column(Integer, nullable=True)
    max_heart_rate = Column(Integer, nullable=True)
    avg_power = Column(Integer, nullable=True)
    max_power = Column(Integer, nullable=True)
    avg_cadence = Column(Integer, nullable=True)
    avg_speed_mps = Column(Float, nullable=True)
    max_speed_mps = Column(Float, nullable=True)

    # Set exactly once, when the activity has been folded into challenge progress.
    aggregated_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("source", "source_activity_id", name="uq_canonical_activity_source_id"),
        CheckConstraint(
            "owner_status IN ('owned', 'awaiting_owner')",
            name="ck_canonical_activity_owner_status",
        ),
        CheckConstraint(
            "(owner_status = 'owned') = (user_id IS NOT NULL)",
            name="ck_canonical_activity_owner_consistency",
        ),
        Index("ix_canonical_activity_awaiting", "owner_status", "source", "external_user_id"),
    )

    @property
    def aggregated(self) -> bool:
        return self.aggregated_at is not None


class ProgressContribution(Base):
    """What one activity added to one participant's total (daily-series history)."""
    __tablename__ = "progress_contribution"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    challenge_id = Column(Uuid, ForeignKey("challenge.id"), nullable=False, index=True)
    participant_id = Column(Uuid, ForeignKey("challenge_participant.id"), nullable=False, index=True)
    activity_id = Column(Uuid, ForeignKey("canonical_activity.id"), nullable=False)
    value = Column(Numeric(14, 3), nullable=False)
    activity_start_time = Column(UTCDateTime, nullable=False)
    applied_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("participant_id", "activity_id", name="uq_contribution_participant_activity"),
    )
