"""
Activity file upload endpoint and the worker-side ingest.
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from core.config import settings
from core.exceptions import PermanentProcessingError
from models import CanonicalActivity
from services.fit_file_decoder import UploadedActivityRecord
from tasks.activity_file_tasks import ingest_activity_file

UPLOAD_HEADERS = {"X-API-Secret": "test-upload-secret"}
INTERNAL_HEADERS = {"X-API-Secret": "test-internal-secret"}


def _record(external_user_id="7654321"):
    return UploadedActivityRecord(
        file_name="7654321_ride.fit",
        content_sha256="e" * 64,
        start_time=datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc),
        external_user_id=external_user_id,
        sport="cycling",
        distance_m=25000.0,
    )


def test_upload_requires_secret(client):
    r = client.post("/v1/activity-files/upload", files={"file": ("ride.fit", b"\x0e\x10", "application/octet-stream")})

    assert r.status_code == 401
    assert r.json()["error_code"] == "UNAUTHORIZED"


def test_upload_rejects_non_fit_files(client, tmp_path):
    with patch.object(settings, "UPLOADS_DIR", str(tmp_path)):
        r = client.post(
            "/v1/activity-files/upload",
            files={"file": ("ride.gpx", b"<gpx/>", "application/gpx+xml")},
            headers=UPLOAD_HEADERS,
        )

    assert r.status_code == 400


def test_upload_rejects_empty_file(client, tmp_path):
    with patch.object(settings, "UPLOADS_DIR", str(tmp_path)):
        r = client.post(
            "/v1/activity-files/upload",
            files={"file": ("ride.fit", b"", "application/octet-stream")},
            headers=UPLOAD_HEADERS,
        )

    assert r.status_code == 400
    assert list((tmp_path / "activity_files").iterdir()) == []


def test_upload_rejects_oversized_file(client, tmp_path):
    with patch.object(settings, "UPLOADS_DIR", str(tmp_path)), patch.object(settings, "ACTIVITY_FILE_MAX_BYTES", 10):
        r = client.post(
            "/v1/activity-files/upload",
            files={"file": ("ride.fit", b"x" * 11, "application/octet-stream")},
            headers=UPLOAD_HEADERS,
        )

    assert r.status_code == 413
    assert list((tmp_path / "activity_files").iterdir()) == []


def test_upload_stores_file_and_enqueues_ingest(client, tmp_path, enqueued):
    content = b"\x0e\x10fake-fit-content"
    with patch.object(settings, "UPLOADS_DIR", str(tmp_path)):
        r = client.post(
            "/v1/activity-files/upload",
            files={"file": ("7654321 ride.fit", content, "application/octet-stream")},
            headers=UPLOAD_HEADERS,
        )

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "queued"
    assert data["file_name"] == "7654321_ride.fit"
    assert data["size_bytes"] == len(content)

    stored_path, file_name = enqueued.ingest_file.call_args.args
    assert file_name == "7654321_ride.fit"
    assert Path(stored_path).parent == tmp_path / "activity_files"
    assert Path(stored_path).read_bytes() == content


def test_upload_broker_outage_returns_503_and_drops_the_file(client, tmp_path, enqueued):
    enqueued.ingest_file.side_effect = ConnectionError("broker down")

    with patch.object(settings, "UPLOADS_DIR", str(tmp_path)):
        r = client.post(
            "/v1/activity-files/upload",
            files={"file": ("ride.fit", b"\x0e\x10fit", "application/octet-stream")},
            headers=UPLOAD_HEADERS,
        )

    assert r.status_code == 503
    assert r.json()["error_code"] == "SERVICE_UNAVAILABLE"
    assert list((tmp_path / "activity_files").iterdir()) == []


def test_ingest_activity_file_stores_unresolved_activity(db_session, tmp_path):
    path = tmp_path / "7654321_ride.fit"
    path.write_bytes(b"fit")

    with patch("services.fit_file_decoder.decode_fit_bytes", return_value=_record()):
        result = ingest_activity_file(db_session, path, "7654321_ride.fit")

    assert result["status"] == "success"
    assert len(result["unresolved_activity_ids"]) == 1
    activity = db_session.query(CanonicalActivity).one()
    assert activity.source == "uploaded_file"
    assert activity.source_activity_id == "e" * 64
    assert activity.external_user_id == "7654321"


def test_ingest_activity_file_aggregates_when_owner_known(db_session, tmp_path, make_user):
    make_user(zwift_user_id="7654321")
    path = tmp_path / "ride.fit"
    path.write_bytes(b"fit")

    with patch("services.fit_file_decoder.decode_fit_bytes", return_value=_record()):
        result = ingest_activity_file(db_session, path, "ride.fit")

    assert len(result["created_activity_ids"]) == 1
    assert result["aggregation"] == {"applied": 0, "deferred": 0}


def test_ingest_activity_file_rejects_undecodable_file(db_session, tmp_path):
    path = tmp_path / "broken.fit"
    path.write_bytes(b"garbage")

    with patch("services.fit_file_decoder.decode_fit_bytes", side_effect=PermanentProcessingError("broken.fit: not a FIT file")):
        result = ingest_activity_file(db_session, path, "broken.fit")

    assert result == {"status": "permanent", "error": "broken.fit: not a FIT file"}
    assert db_session.query(CanonicalActivity).count() == 0


def test_reprocess_endpoint_reconciles_and_enqueues(client, db_session, make_user, enqueued):
    from services.activity_normalizer import normalize_uploaded_file

    outcome = normalize_uploaded_file(db_session, _record())
    make_user(zwift_user_id="7654321")

    r = client.post("/v1/activity-files/reprocess", headers=INTERNAL_HEADERS)

    assert r.status_code == 200
    assert r.json() == {"users_checked": 1, "reconciled": 1}
    enqueued.aggregate.assert_called_once_with([str(outcome.unresolved_activity_ids[0])])


def test_reprocess_survives_broker_outage(client, db_session, make_user, enqueued):
    from services.activity_normalizer import normalize_uploaded_file

    outcome = normalize_uploaded_file(db_session, _record())
    make_user(zwift_user_id="7654321")
    enqueued.aggregate.side_effect = ConnectionError("broker down")

    r = client.post("/v1/activity-files/reprocess", headers=INTERNAL_HEADERS)

    assert r.status_code == 200
    assert r.json() == {"users_checked": 1, "reconciled": 1}
    activity = db_session.get(CanonicalActivity, outcome.unresolved_activity_ids[0], populate_existing=True)
    assert activity.owner_status == "owned"
    assert activity.aggregated_at is None
