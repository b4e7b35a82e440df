from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, date
from uuid import UUID
from typing import Optional, List, Literal


class WebhookAck(BaseModel):
    """Webhook endpoints always answer 200 with one of these."""
    status: str
    notification_id: Optional[UUID] = None


class WebhookNotificationResponse(BaseModel):
    id: UUID
    kind: str
    kind_raw: str
    delivery: str
    received_at: datetime
    status: str
    attempt_count: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    is_permanent_failure: bool

    model_config = ConfigDict(from_attributes=True)


class ProcessFailedResponse(BaseModel):
    requeued: int
    sweep_enqueued: bool


class ActivityFileUploadResponse(BaseModel):
    status: str
    file_name: str
    size_bytes: int
    task_id: Optional[str] = None


class ManualActivityCreate(BaseModel):
    user_id: UUID
    # Caller-supplied idempotency key; a repeated id is ignored.
    client_activity_id: str = Field(min_length=1, max_length=200)
    activity_type: Optional[str] = None
    name: Optional[str] = None
    start_time: datetime
    duration_s: Optional[int] = Field(default=None, ge=0)
    distance_m: Optional[float] = Field(default=None, ge=0)
    elevation_gain_m: Optional[float] = Field(default=None, ge=0)


class NormalizationResponse(BaseModel):
    status: str
    created_activity_ids: List[UUID] = []
    unresolved_activity_ids: List[UUID] = []
    duplicates: int = 0
    error: Optional[str] = None


class AccountLinkRequest(BaseModel):
    provider: Literal["garmin", "zwift"]
    external_user_id: str = Field(min_length=1)
    # Garmin pushes identify users by their access token as well as their id.
    access_token: Optional[str] = None


class AccountLinkResponse(BaseModel):
    user_id: UUID
    provider: str
    reconciled_activity_ids: List[UUID]


class ReconciliationSweepResponse(BaseModel):
    users_checked: int
    reconciled: int


class ParticipantProgressResponse(BaseModel):
    id: UUID
    challenge_id: UUID
    user_id: UUID
    joined_at: datetime
    cumulative_distance_km: float
    cumulative_elevation_m: float
    cumulative_duration_min: float
    current_total: float
    last_activity_at: Optional[datetime] = None
    is_completed: bool
    completed_at: Optional[datetime] = None


class LeaderboardEntryResponse(BaseModel):
    position: int
    user_id: UUID
    username: Optional[str] = None
    total: float
    joined_at: datetime
    is_completed: bool
    completed_at: Optional[datetime] = None


class LeaderboardResponse(BaseModel):
    challenge_id: UUID
    challenge_type: str
    entries: List[LeaderboardEntryResponse]


class DailyProgressPointResponse(BaseModel):
    date: date
    value: float
    cumulative: float


class DailySeriesResponse(BaseModel):
    challenge_id: UUID
    user_id: UUID
    challenge_type: str
    points: List[DailyProgressPointResponse]
