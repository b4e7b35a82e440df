"""
Callback fetch error mapping (mocked; no external calls).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import PermanentProcessingError, TransientProcessingError
from services.garmin_client import fetch_activity_summaries, fetch_callback_bytes, fetch_callback_json


def _response(status_code=200, json_body=None, content=b""):
    r = MagicMock()
    r.status_code = status_code
    r.content = content
    if isinstance(json_body, Exception):
        r.json.side_effect = json_body
    else:
        r.json.return_value = json_body
    return r


def test_fetch_json_returns_body_and_passes_timeout():
    with patch("services.garmin_client.requests.get", return_value=_response(json_body=[{"summaryId": "1"}])) as get:
        assert fetch_callback_json("https://example.test/cb", timeout_s=5) == [{"summaryId": "1"}]

    get.assert_called_once_with("https://example.test/cb", timeout=5)


@pytest.mark.parametrize("status_code", [429, 500, 503])
def test_retryable_status_is_transient(status_code):
    with patch("services.garmin_client.requests.get", return_value=_response(status_code)):
        with pytest.raises(TransientProcessingError):
            fetch_callback_json("https://example.test/cb")


@pytest.mark.parametrize("status_code", [400, 401, 404, 410])
def test_client_error_is_permanent(status_code):
    with patch("services.garmin_client.requests.get", return_value=_response(status_code)):
        with pytest.raises(PermanentProcessingError):
            fetch_callback_json("https://example.test/cb")


@pytest.mark.parametrize(
    "exc",
    [requests.exceptions.Timeout("slow"), requests.exceptions.ConnectionError("refused")],
)
def test_network_failures_are_transient(exc):
    with patch("services.garmin_client.requests.get", side_effect=exc):
        with pytest.raises(TransientProcessingError):
            fetch_callback_json("https://example.test/cb")


def test_invalid_url_is_permanent():
    with patch("services.garmin_client.requests.get", side_effect=requests.exceptions.InvalidURL("bad")):
        with pytest.raises(PermanentProcessingError):
            fetch_callback_json("not a url")
    with pytest.raises(PermanentProcessingError):
        fetch_callback_json(None)


def test_non_json_body_is_permanent():
    with patch("services.garmin_client.requests.get", return_value=_response(json_body=ValueError("no json"))):
        with pytest.raises(PermanentProcessingError):
            fetch_callback_json("https://example.test/cb")


def test_fetch_bytes_returns_raw_content():
    with patch("services.garmin_client.requests.get", return_value=_response(content=b"\x0e\x10FIT")):
        assert fetch_callback_bytes("https://example.test/file") == b"\x0e\x10FIT"


def test_fetch_activity_summaries_sends_window_and_token():
    start = datetime(2026, 3, 4, tzinfo=timezone.utc)
    end = datetime(2026, 3, 5, tzinfo=timezone.utc)
    with patch("services.garmin_client.requests.get", return_value=_response(json_body=[{"summaryId": "1"}])) as get:
        assert fetch_activity_summaries("token-abc", start, end, timeout_s=5) == [{"summaryId": "1"}]

    url = get.call_args.args[0]
    assert url.endswith("/wellness-api/rest/activities")
    assert get.call_args.kwargs["params"] == {
        "uploadStartTimeInSeconds": int(start.timestamp()),
        "uploadEndTimeInSeconds": int(end.timestamp()),
    }
    assert get.call_args.kwargs["headers"] == {"Authorization": "Bearer token-abc"}
    assert get.call_args.kwargs["timeout"] == 5


def test_fetch_activity_summaries_rejects_non_list_body_and_missing_token():
    start = datetime(2026, 3, 4, tzinfo=timezone.utc)
    with patch("services.garmin_client.requests.get", return_value=_response(json_body={"activities": []})):
        with pytest.raises(PermanentProcessingError):
            fetch_activity_summaries("token-abc", start, start)
    with pytest.raises(PermanentProcessingError):
        fetch_activity_summaries(None, start, start)
