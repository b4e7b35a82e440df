"""
End-to-end notification processing: claim, normalize, record outcome, aggregate.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from celery.exceptions import SoftTimeLimitExceeded

from core.exceptions import PermanentProcessingError, TransientProcessingError
from models import CanonicalActivity, WebhookNotification
from services.challenge_progress import join_challenge
from services.notification_pipeline import process_notification
from services.retry_scheduler import ClaimLostError, compute_next_retry_at
from services.webhook_intake import DeliveryMode, receive_notification
from tasks.notification_tasks import process_notification_task, sweep_webhook_notifications_task

NOW = datetime(2026, 3, 3, 18, 0, tzinfo=timezone.utc)


def _store(db, payload, kind_raw="activities", delivery=DeliveryMode.PUSH):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return receive_notification(db, kind_raw, body, delivery, now=NOW - timedelta(minutes=1))


def _reload(db, notification_id):
    return db.get(WebhookNotification, notification_id, populate_existing=True)


def test_push_is_processed_and_aggregated(db_session, test_user, make_challenge):
    challenge = make_challenge(target_distance_km=Decimal("50"))
    participant = join_challenge(db_session, challenge.id, test_user.id)
    notification_id = _store(db_session, {
        "activities": [{
            "summaryId": "run-1",
            "userId": "garmin-user-1",
            "activityType": "RUNNING",
            "startTimeInSeconds": int(datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc).timestamp()),
            "distanceInMeters": 12345.0,
        }]
    })

    result = process_notification(db_session, notification_id, now=NOW)

    assert result["status"] == "success"
    assert len(result["created_activity_ids"]) == 1
    assert result["aggregation"] == {"applied": 1, "deferred": 0}

    row = _reload(db_session, notification_id)
    assert row.status == "processed"
    assert row.processed_at == NOW
    assert row.raw_payload  # never discarded

    db_session.refresh(participant)
    assert participant.cumulative_distance_km == Decimal("12.345")
    activity = db_session.query(CanonicalActivity).one()
    assert activity.aggregated_at == NOW


def test_second_delivery_of_same_activity_does_not_double_count(db_session, test_user, make_challenge):
    challenge = make_challenge(target_distance_km=Decimal("50"))
    participant = join_challenge(db_session, challenge.id, test_user.id)
    payload = {"activities": [{
        "summaryId": "run-2",
        "userId": "garmin-user-1",
        "startTimeInSeconds": int(datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc).timestamp()),
        "distanceInMeters": 10000.0,
    }]}

    process_notification(db_session, _store(db_session, payload), now=NOW)
    result = process_notification(db_session, _store(db_session, payload), now=NOW)

    assert result["status"] == "success"
    assert result["duplicates"] == 1
    assert "aggregation" not in result
    db_session.refresh(participant)
    assert participant.cumulative_distance_km == Decimal("10")


def test_transient_failure_is_scheduled_for_retry(db_session):
    notification_id = _store(
        db_session,
        {"activities": [{"userId": "garmin-user-1", "callbackURL": "https://example.test/cb"}]},
        delivery=DeliveryMode.PING,
    )
    fetch_json = MagicMock(side_effect=TransientProcessingError("Callback returned HTTP 503"))

    result = process_notification(db_session, notification_id, fetch_json=fetch_json, now=NOW)

    assert result["status"] == "transient"
    row = _reload(db_session, notification_id)
    assert row.status == "failed"
    assert row.attempt_count == 1
    assert row.next_retry_at == compute_next_retry_at(1, NOW)
    assert row.last_error == "Callback returned HTTP 503"
    assert row.is_permanent_failure is False


def test_permanent_failure_is_parked(db_session):
    notification_id = _store(db_session, "{definitely not json")

    result = process_notification(db_session, notification_id, now=NOW)

    assert result["status"] == "permanent"
    row = _reload(db_session, notification_id)
    assert row.status == "failed"
    assert row.is_permanent_failure is True
    assert row.next_retry_at is None
    assert row.raw_payload == "{definitely not json"


def test_unexpected_error_counts_as_transient(db_session):
    notification_id = _store(
        db_session,
        {"activities": [{"callbackURL": "https://example.test/cb"}]},
        delivery=DeliveryMode.PING,
    )
    fetch_json = MagicMock(side_effect=RuntimeError("boom"))

    result = process_notification(db_session, notification_id, fetch_json=fetch_json, now=NOW)

    assert result["status"] == "failed"
    row = _reload(db_session, notification_id)
    assert row.status == "failed"
    assert row.attempt_count == 1
    assert "boom" in row.last_error


def test_time_limit_records_attempt_and_reraises(db_session):
    notification_id = _store(
        db_session,
        {"activities": [{"callbackURL": "https://example.test/slow"}]},
        delivery=DeliveryMode.PING,
    )
    fetch_json = MagicMock(side_effect=SoftTimeLimitExceeded())

    with pytest.raises(SoftTimeLimitExceeded):
        process_notification(db_session, notification_id, fetch_json=fetch_json, now=NOW)

    row = _reload(db_session, notification_id)
    assert row.status == "failed"
    assert row.last_error == "Timed out"
    assert row.attempt_count == 1


def test_worker_shutdown_releases_claim_without_counting_an_attempt(db_session):
    notification_id = _store(
        db_session,
        {"activities": [{"callbackURL": "https://example.test/slow"}]},
        delivery=DeliveryMode.PING,
    )
    fetch_json = MagicMock(side_effect=SystemExit(1))

    with pytest.raises(SystemExit):
        process_notification(db_session, notification_id, fetch_json=fetch_json, now=NOW)

    row = _reload(db_session, notification_id)
    assert row.status == "unprocessed"
    assert row.attempt_count == 0
    assert row.claimed_at is None


def test_already_processed_notification_is_skipped(db_session):
    notification_id = _store(db_session, {"activities": []})
    assert process_notification(db_session, notification_id, now=NOW)["status"] == "success"

    fetch_json = MagicMock()
    result = process_notification(db_session, notification_id, fetch_json=fetch_json, now=NOW + timedelta(hours=1))

    assert result["status"] == "skipped"
    fetch_json.assert_not_called()


def test_claim_lost_discards_result(db_session):
    notification_id = _store(db_session, {"activities": [{"summaryId": "late-1"}]})

    with patch(
        "services.notification_pipeline.record_success",
        side_effect=ClaimLostError("lost"),
    ):
        result = process_notification(db_session, notification_id, now=NOW)

    assert result["status"] == "claim_lost"
    assert db_session.query(CanonicalActivity).count() == 0


def test_file_kind_with_undecodable_file_fails_permanently(db_session):
    notification_id = _store(
        db_session,
        {"activityFiles": [{"summaryId": "f-9", "callbackURL": "https://example.test/file", "fileType": "FIT"}]},
        kind_raw="activityFiles",
        delivery=DeliveryMode.PING,
    )
    fetch_bytes = MagicMock(return_value=b"not a fit file")

    with patch(
        "services.activity_normalizer.decode_fit_bytes",
        side_effect=PermanentProcessingError("activity.fit: not a FIT file"),
    ):
        result = process_notification(db_session, notification_id, fetch_bytes=fetch_bytes, now=NOW)

    assert result["status"] == "permanent"
    assert _reload(db_session, notification_id).is_permanent_failure is True


def test_process_notification_task_uses_worker_session(db_session):
    notification_id = _store(db_session, {"activities": []})

    with patch("tasks.notification_tasks.get_db_sync", return_value=db_session):
        result = process_notification_task(str(notification_id))

    assert result["status"] == "success"
    assert _reload(db_session, notification_id).status == "processed"


def test_sweep_enqueues_eligible_notifications(db_session, enqueued):
    first = _store(db_session, {"activities": []})
    second = _store(db_session, {"activities": []})
    done = _store(db_session, {"activities": []})
    process_notification(db_session, done, now=NOW)

    with patch("tasks.notification_tasks.get_db_sync", return_value=db_session):
        result = sweep_webhook_notifications_task()

    assert result == {"enqueued": 2, "poisoned": 0}
    enqueued_ids = {call.args[0] for call in enqueued.process.call_args_list}
    assert enqueued_ids == {str(first), str(second)}
