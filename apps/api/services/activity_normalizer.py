"""
Activity Normalizer

Turns stored webhook notifications, uploaded activity files and manual entries
into ``CanonicalActivity`` rows.

Dispatch is a tagged variant on the notification kind: ``KIND_PARSERS`` maps
each kind to the payload key its items live under and a pure item parser.
Adding a kind means adding one entry; ``unknown`` has no entry and fails
permanently.

Dedup key is ``(source, source_activity_id)``, checked before insert and
enforced by a unique constraint. Expected failures never escape as exceptions:
they come back as a ``NormalizationOutcome`` that the pipeline maps onto
retry-scheduler transitions.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from core.exceptions import PermanentProcessingError, ProcessingError
from models import CanonicalActivity, User, WebhookNotification
from services.account_linking import resolve_garmin_owner, resolve_zwift_owner
from services.fit_file_decoder import UploadedActivityRecord, decode_fit_bytes
from services.garmin_client import fetch_callback_bytes, fetch_callback_json
from services.webhook_intake import DeliveryMode, NotificationKind

logger = logging.getLogger(__name__)

SOURCE_WEARABLE_PUSH = "wearable_push"
SOURCE_UPLOADED_FILE = "uploaded_file"
SOURCE_MANUAL = "manual"

OUTCOME_SUCCESS = "success"
OUTCOME_TRANSIENT = "transient"
OUTCOME_PERMANENT = "permanent"

DEFAULT_CATEGORY = "other"

_CATEGORY_TYPES = {
    "running": (
        "RUNNING", "STREET_RUNNING", "TRACK_RUNNING", "TRAIL_RUNNING", "TREADMILL_RUNNING",
        "INDOOR_RUNNING", "ULTRA_RUN", "VIRTUAL_RUN", "OBSTACLE_RUN",
    ),
    "cycling": (
        "CYCLING", "ROAD_BIKING", "MOUNTAIN_BIKING", "GRAVEL_CYCLING", "INDOOR_CYCLING",
        "VIRTUAL_RIDE", "CYCLOCROSS", "TRACK_CYCLING", "RECUMBENT_CYCLING", "BMX",
        "E_BIKE_FITNESS", "E_BIKE_MOUNTAIN", "HAND_CYCLING", "INDOOR_HAND_CYCLING",
    ),
    "walking": ("WALKING", "CASUAL_WALKING", "SPEED_WALKING"),
    "hiking": ("HIKING",),
    "swimming": ("SWIMMING", "LAP_SWIMMING", "OPEN_WATER_SWIMMING"),
    "fitness": (
        "STRENGTH_TRAINING", "CARDIO_TRAINING", "ELLIPTICAL", "INDOOR_ROWING", "STAIR_CLIMBING",
        "YOGA", "PILATES", "HIIT", "FITNESS_EQUIPMENT", "TRAINING",
    ),
    "winter_sports": (
        "RESORT_SKIING_SNOWBOARDING", "BACKCOUNTRY_SKIING", "CROSS_COUNTRY_SKIING",
        "CROSS_COUNTRY_SKIING_WS", "SKATE_SKIING_WS", "SNOWSHOE_WS",
    ),
    "water_sports": ("ROWING", "KAYAKING", "STAND_UP_PADDLEBOARDING", "SURFING", "PADDLING"),
}

# Platform activity type (and FIT sport name, upper-cased) -> category.
ACTIVITY_CATEGORIES: Dict[str, str] = {
    activity_type: category
    for category, activity_types in _CATEGORY_TYPES.items()
    for activity_type in activity_types
}


def categorize_activity_type(activity_type: Optional[str]) -> str:
    if not activity_type:
        return DEFAULT_CATEGORY
    key = str(activity_type).strip().upper().replace(" ", "_").replace("-", "_")
    return ACTIVITY_CATEGORIES.get(key, DEFAULT_CATEGORY)


@dataclass
class ActivitySummary:
    """One activity as read from a payload, before ownership and dedup."""
    source_activity_id: str
    activity_type: Optional[str] = None
    name: Optional[str] = None
    start_time: Optional[datetime] = None
    duration_s: Optional[int] = None
    distance_m: Optional[float] = None
    elevation_gain_m: Optional[float] = None
    avg_heart_rate: Optional[int] = None
    max_heart_rate: Optional[int] = None
    avg_power: Optional[int] = None
    max_power: Optional[int] = None
    avg_cadence: Optional[int] = None
    avg_speed_mps: Optional[float] = None
    max_speed_mps: Optional[float] = None
    external_user_id: Optional[str] = None
    access_token: Optional[str] = None


@dataclass
class NormalizationOutcome:
    status: str
    created_activity_ids: List[UUID] = field(default_factory=list)
    unresolved_activity_ids: List[UUID] = field(default_factory=list)
    duplicates: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OUTCOME_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "created_activity_ids": [str(i) for i in self.created_activity_ids],
            "unresolved_activity_ids": [str(i) for i in self.unresolved_activity_ids],
            "duplicates": self.duplicates,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def _first_present(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _number(item: Dict[str, Any], *keys: str) -> Optional[float]:
    value = _first_present(item, *keys)
    if value is None:
        return None
    if isinstance(value, bool):
        raise PermanentProcessingError(f"Field {keys[0]} is not numeric: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise PermanentProcessingError(f"Field {keys[0]} is not numeric: {value!r}")
    if number < 0:
        raise PermanentProcessingError(f"Field {keys[0]} is negative: {value!r}")
    return number


def _integer(item: Dict[str, Any], *keys: str) -> Optional[int]:
    number = _number(item, *keys)
    return int(round(number)) if number is not None else None


def _start_time(item: Dict[str, Any]) -> Optional[datetime]:
    epoch = _first_present(item, "startTimeInSeconds", "startTimeSeconds")
    if epoch is not None:
        try:
            return datetime.fromtimestamp(int(epoch), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            raise PermanentProcessingError(f"Invalid startTimeInSeconds: {epoch!r}")

    iso = _first_present(item, "startTime", "startTimeGmt")
    if iso is None:
        return None
    try:
        parsed = datetime.fromisoformat(str(iso).replace("Z", "+00:00"))
    except ValueError:
        raise PermanentProcessingError(f"Invalid startTime: {iso!r}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _source_activity_id(item: Dict[str, Any]) -> str:
    value = _first_present(item, "summaryId", "activityId", "id")
    if value is None or str(value).strip() == "":
        raise PermanentProcessingError("Activity item has no summaryId/activityId")
    return str(value).strip()


def _owner_refs(item: Dict[str, Any], inherited: Optional[Dict[str, Any]] = None) -> Tuple[Optional[str], Optional[str]]:
    inherited = inherited or {}
    user_id = _first_present(item, "userId") or inherited.get("userId")
    token = _first_present(item, "userAccessToken") or inherited.get("userAccessToken")
    return (str(user_id) if user_id is not None else None), token


def parse_activity_item(item: Dict[str, Any], inherited: Optional[Dict[str, Any]] = None) -> ActivitySummary:
    """Activity summary / manually updated activity: flat summary fields."""
    if not isinstance(item, dict):
        raise PermanentProcessingError(f"Activity item is not an object: {type(item).__name__}")
    external_user_id, token = _owner_refs(item, inherited)
    return ActivitySummary(
        source_activity_id=_source_activity_id(item),
        activity_type=_first_present(item, "activityType", "type"),
        name=_first_present(item, "activityName", "name"),
        start_time=_start_time(item),
        duration_s=_integer(item, "durationInSeconds", "duration"),
        distance_m=_number(item, "distanceInMeters", "distanceMeters", "distance"),
        elevation_gain_m=_number(item, "totalElevationGainInMeters", "elevationGainInMeters", "elevationGain"),
        avg_heart_rate=_integer(item, "averageHeartRateInBeatsPerMinute", "averageHeartRate"),
        max_heart_rate=_integer(item, "maxHeartRateInBeatsPerMinute", "maxHeartRate"),
        avg_power=_integer(item, "averagePowerInWatts", "averagePower"),
        max_power=_integer(item, "maxPowerInWatts", "maxPower"),
        avg_cadence=_integer(
            item,
            "averageRunCadenceInStepsPerMinute",
            "averageBikeCadenceInRoundsPerMinute",
            "averageCadence",
        ),
        avg_speed_mps=_number(item, "averageSpeedInMetersPerSecond", "averageSpeed"),
        max_speed_mps=_number(item, "maxSpeedInMetersPerSecond", "maxSpeed"),
        external_user_id=external_user_id,
        access_token=token,
    )


def parse_activity_detail_item(item: Dict[str, Any], inherited: Optional[Dict[str, Any]] = None) -> ActivitySummary:
    """Activity details wrap the summary fields in a nested ``summary`` object."""
    if not isinstance(item, dict):
        raise PermanentProcessingError(f"Activity detail item is not an object: {type(item).__name__}")
    summary = item.get("summary")
    if summary is not None and not isinstance(summary, dict):
        raise PermanentProcessingError("Activity detail 'summary' is not an object")
    merged = dict(summary or {})
    for key in ("summaryId", "activityId", "id", "userId", "userAccessToken"):
        if item.get(key) is not None:
            merged.setdefault(key, item[key])
    return parse_activity_item(merged, inherited)


def parse_move_detected_item(item: Dict[str, Any], inherited: Optional[Dict[str, Any]] = None) -> ActivitySummary:
    """Auto-detected moves carry type, start and duration only."""
    if not isinstance(item, dict):
        raise PermanentProcessingError(f"Move item is not an object: {type(item).__name__}")
    external_user_id, token = _owner_refs(item, inherited)
    return ActivitySummary(
        source_activity_id=_source_activity_id(item),
        activity_type=_first_present(item, "activityType", "activitySubType"),
        name=_first_present(item, "activityName"),
        start_time=_start_time(item),
        duration_s=_integer(item, "durationInSeconds", "duration"),
        distance_m=_number(item, "distanceInMeters", "distanceMeters"),
        external_user_id=external_user_id,
        access_token=token,
    )


def summary_from_uploaded_record(record: UploadedActivityRecord, source_activity_id: Optional[str] = None) -> ActivitySummary:
    return ActivitySummary(
        source_activity_id=source_activity_id or record.content_sha256,
        activity_type=record.sport,
        name=record.name,
        start_time=record.start_time,
        duration_s=record.duration_s,
        distance_m=record.distance_m,
        elevation_gain_m=record.elevation_gain_m,
        avg_heart_rate=record.avg_heart_rate,
        max_heart_rate=record.max_heart_rate,
        avg_power=record.avg_power,
        max_power=record.max_power,
        avg_cadence=record.avg_cadence,
        avg_speed_mps=record.avg_speed_mps,
        max_speed_mps=record.max_speed_mps,
        external_user_id=record.external_user_id,
    )


@dataclass(frozen=True)
class KindParser:
    list_keys: Tuple[str, ...]
    parse_item: Optional[Callable[..., ActivitySummary]]
    # Items reference a binary file to download instead of carrying fields.
    file_based: bool = False


KIND_PARSERS: Dict[NotificationKind, KindParser] = {
    NotificationKind.ACTIVITY_SUMMARY: KindParser(("activities",), parse_activity_item),
    NotificationKind.MANUALLY_UPDATED: KindParser(("manuallyUpdatedActivities",), parse_activity_item),
    NotificationKind.ACTIVITY_DETAIL: KindParser(("activityDetails",), parse_activity_detail_item),
    NotificationKind.MOVE_DETECTED: KindParser(("moveIQActivities", "moveIq"), parse_move_detected_item),
    NotificationKind.ACTIVITY_FILE: KindParser(("activityFiles",), None, file_based=True),
}


def _extract_items(document: Any, list_keys: Tuple[str, ...]) -> List[Any]:
    if isinstance(document, list):
        return document
    if not isinstance(document, dict):
        raise PermanentProcessingError(f"Payload must be an object or array, got {type(document).__name__}")
    for key in list_keys:
        if key in document:
            items = document[key]
            if items is None:
                return []
            if not isinstance(items, list):
                raise PermanentProcessingError(f"Payload '{key}' is not an array")
            return items
    raise PermanentProcessingError(f"Payload has none of {', '.join(list_keys)}")


def parse_notification_payload(
    kind: NotificationKind,
    raw_payload: str,
    delivery: DeliveryMode = DeliveryMode.PUSH,
    fetch_json: Callable[[str], Any] = fetch_callback_json,
    fetch_bytes: Callable[[str], bytes] = fetch_callback_bytes,
) -> List[ActivitySummary]:
    """
    Decode a stored payload into activity summaries.

    Raises PermanentProcessingError for malformed payloads and unknown kinds,
    TransientProcessingError when a callback fetch fails in a retryable way.
    """
    parser = KIND_PARSERS.get(kind)
    if parser is None:
        raise PermanentProcessingError(f"No parser for notification kind '{kind.value}'")

    try:
        document = json.loads(raw_payload)
    except (TypeError, ValueError) as e:
        raise PermanentProcessingError(f"Payload is not valid JSON: {e}")

    summaries: List[ActivitySummary] = []
    for item in _extract_items(document, parser.list_keys):
        if not isinstance(item, dict):
            raise PermanentProcessingError(f"Payload item is not an object: {type(item).__name__}")

        if parser.file_based:
            content = fetch_bytes(item.get("callbackURL"))
            file_name = str(item.get("fileName") or item.get("summaryId") or "activity.fit")
            record = decode_fit_bytes(content, file_name)
            summary = summary_from_uploaded_record(
                record,
                source_activity_id=str(_first_present(item, "summaryId", "activityId") or record.content_sha256),
            )
            summary.external_user_id, summary.access_token = _owner_refs(item)
            summaries.append(summary)
            continue

        callback_url = item.get("callbackURL")
        if callback_url and (delivery == DeliveryMode.PING or _first_present(item, "summaryId", "activityId", "id") is None):
            fetched = fetch_json(callback_url)
            for fetched_item in _extract_items(fetched, parser.list_keys):
                summaries.append(parser.parse_item(fetched_item, inherited=item))
            continue

        summaries.append(parser.parse_item(item))
    return summaries


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _find_existing(db: Session, source: str, source_activity_id: str) -> Optional[CanonicalActivity]:
    return (
        db.query(CanonicalActivity)
        .filter(
            CanonicalActivity.source == source,
            CanonicalActivity.source_activity_id == source_activity_id,
        )
        .first()
    )


def _build_activity(
    summary: ActivitySummary,
    source: str,
    owner: Optional[User],
    start_time: datetime,
    notification_id: Optional[UUID] = None,
) -> CanonicalActivity:
    return CanonicalActivity(
        user_id=owner.id if owner else None,
        owner_status="owned" if owner else "awaiting_owner",
        external_user_id=summary.external_user_id,
        owner_resolved_at=None,
        source=source,
        source_activity_id=summary.source_activity_id,
        notification_id=notification_id,
        category=categorize_activity_type(summary.activity_type),
        activity_type=summary.activity_type,
        name=summary.name,
        start_time=start_time,
        duration_s=summary.duration_s,
        distance_m=summary.distance_m,
        elevation_gain_m=summary.elevation_gain_m,
        avg_heart_rate=summary.avg_heart_rate,
        max_heart_rate=summary.max_heart_rate,
        avg_power=summary.avg_power,
        max_power=summary.max_power,
        avg_cadence=summary.avg_cadence,
        avg_speed_mps=summary.avg_speed_mps,
        max_speed_mps=summary.max_speed_mps,
    )


def _store_summaries(
    db: Session,
    summaries: List[ActivitySummary],
    source: str,
    resolve_owner: Callable[[ActivitySummary], Optional[User]],
    fallback_start: datetime,
    notification_id: Optional[UUID] = None,
) -> NormalizationOutcome:
    outcome = NormalizationOutcome(status=OUTCOME_SUCCESS)
    seen = set()

    for summary in summaries:
        if summary.source_activity_id in seen:
            outcome.duplicates += 1
            continue
        seen.add(summary.source_activity_id)

        if _find_existing(db, source, summary.source_activity_id):
            outcome.duplicates += 1
            continue

        owner = resolve_owner(summary)
        activity = _build_activity(
            summary,
            source,
            owner,
            start_time=summary.start_time or fallback_start,
            notification_id=notification_id,
        )
        db.add(activity)
        db.flush()

        if owner:
            outcome.created_activity_ids.append(activity.id)
        else:
            outcome.unresolved_activity_ids.append(activity.id)
            logger.info(
                f"Stored {source} activity {summary.source_activity_id} awaiting owner",
                extra={"external_user_id": summary.external_user_id, "activity_id": str(activity.id)},
            )

    return outcome


def _run(db: Session, work: Callable[[], NormalizationOutcome], context: str) -> NormalizationOutcome:
    """Map exceptions from ``work`` onto outcomes; roll back anything partial."""
    try:
        return work()
    except ProcessingError as e:
        db.rollback()
        status = OUTCOME_TRANSIENT if e.retryable else OUTCOME_PERMANENT
        return NormalizationOutcome(status=status, error=e.message)
    except IntegrityError as e:
        # Another worker inserted the same (source, id) first; the retry dedups.
        db.rollback()
        logger.warning(f"{context}: concurrent insert detected, will retry: {e.orig}")
        return NormalizationOutcome(status=OUTCOME_TRANSIENT, error=f"Concurrent insert: {e.orig}")
    except OperationalError as e:
        db.rollback()
        logger.warning(f"{context}: database unavailable: {e.orig}")
        return NormalizationOutcome(status=OUTCOME_TRANSIENT, error=f"Database error: {e.orig}")


def normalize_notification(
    db: Session,
    notification: WebhookNotification,
    fetch_json: Callable[[str], Any] = fetch_callback_json,
    fetch_bytes: Callable[[str], bytes] = fetch_callback_bytes,
) -> NormalizationOutcome:
    """
    Produce canonical activities for one notification.

    On success the new rows are flushed but not committed, so the caller can
    mark the notification processed in the same transaction. On failure the
    session has been rolled back.
    """
    context = f"notification {notification.id}"

    def work() -> NormalizationOutcome:
        kind = NotificationKind(notification.kind)
        delivery = DeliveryMode(notification.delivery or DeliveryMode.PUSH.value)
        summaries = parse_notification_payload(
            kind,
            notification.raw_payload,
            delivery=delivery,
            fetch_json=fetch_json,
            fetch_bytes=fetch_bytes,
        )
        return _store_summaries(
            db,
            summaries,
            SOURCE_WEARABLE_PUSH,
            resolve_owner=lambda s: resolve_garmin_owner(db, s.external_user_id, s.access_token),
            fallback_start=notification.received_at,
            notification_id=notification.id,
        )

    try:
        NotificationKind(notification.kind)
    except ValueError:
        return NormalizationOutcome(status=OUTCOME_PERMANENT, error=f"Unknown notification kind '{notification.kind}'")

    outcome = _run(db, work, context)
    logger.info(
        f"Normalized {context}: {outcome.status}",
        extra={
            "notification_id": str(notification.id),
            "kind": notification.kind,
            "created": len(outcome.created_activity_ids),
            "unresolved": len(outcome.unresolved_activity_ids),
            "duplicates": outcome.duplicates,
        },
    )
    return outcome


def normalize_uploaded_file(db: Session, record: UploadedActivityRecord) -> NormalizationOutcome:
    """Store a decoded upload (dedup by content hash) and commit."""

    def work() -> NormalizationOutcome:
        outcome = _store_summaries(
            db,
            [summary_from_uploaded_record(record)],
            SOURCE_UPLOADED_FILE,
            resolve_owner=lambda s: resolve_zwift_owner(db, s.external_user_id),
            fallback_start=record.start_time,
        )
        db.commit()
        return outcome

    return _run(db, work, f"uploaded file {record.file_name}")


def normalize_backfilled_summaries(
    db: Session,
    user: User,
    items: List[Any],
    fallback_start: datetime,
) -> NormalizationOutcome:
    """
    Store activity summaries pulled for a known user and commit.

    Same source and dedup key as webhook deliveries, so anything a webhook
    already delivered counts as a duplicate. Malformed items are skipped.
    """

    def work() -> NormalizationOutcome:
        summaries = []
        for item in items:
            try:
                summary = parse_activity_item(item)
            except PermanentProcessingError as e:
                logger.warning(f"Skipping backfilled item for user {user.id}: {e.message}")
                continue
            summary.external_user_id = summary.external_user_id or user.garmin_user_id
            summaries.append(summary)
        outcome = _store_summaries(
            db,
            summaries,
            SOURCE_WEARABLE_PUSH,
            resolve_owner=lambda s: user,
            fallback_start=fallback_start,
        )
        db.commit()
        return outcome

    return _run(db, work, f"backfill for user {user.id}")


def normalize_manual_entry(db: Session, user_id: UUID, entry: Dict[str, Any]) -> NormalizationOutcome:
    """
    Store a manually entered activity for a known user and commit.

    ``entry`` uses the canonical field names (client_activity_id, start_time,
    distance_m, ...); the client id doubles as the dedup key.
    """

    def work() -> NormalizationOutcome:
        user = db.get(User, user_id)
        if not user:
            raise PermanentProcessingError(f"Unknown user {user_id}")
        start_time = entry.get("start_time")
        if not isinstance(start_time, datetime):
            raise PermanentProcessingError("Manual entry requires start_time")
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)

        summary = ActivitySummary(
            source_activity_id=f"{user.id}:{entry['client_activity_id']}",
            activity_type=entry.get("activity_type"),
            name=entry.get("name"),
            start_time=start_time,
            duration_s=entry.get("duration_s"),
            distance_m=entry.get("distance_m"),
            elevation_gain_m=entry.get("elevation_gain_m"),
        )
        outcome = _store_summaries(
            db,
            [summary],
            SOURCE_MANUAL,
            resolve_owner=lambda s: user,
            fallback_start=start_time,
        )
        db.commit()
        return outcome

    return _run(db, work, f"manual entry for user {user_id}")
