"""
Garmin fetches.

Ping deliveries only carry a ``callbackURL``; the data has to be pulled from
it. The daily backfill pulls activity summaries for a time window directly.
Every call is bounded by EXTERNAL_API_TIMEOUT and failures are mapped onto
the pipeline's transient / permanent error taxonomy.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

import requests

from core.config import settings
from core.exceptions import PermanentProcessingError, TransientProcessingError

logger = logging.getLogger(__name__)

# Throttled or upstream trouble: worth another attempt later.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def _get(url: str, timeout_s: Optional[float], **request_kwargs) -> requests.Response:
    if not url:
        raise PermanentProcessingError("Ping item has no callbackURL")
    timeout = settings.EXTERNAL_API_TIMEOUT if timeout_s is None else timeout_s
    try:
        r = requests.get(url, timeout=timeout, **request_kwargs)
    except requests.exceptions.Timeout as e:
        raise TransientProcessingError(f"Callback fetch timed out after {timeout}s: {e}") from e
    except requests.exceptions.ConnectionError as e:
        raise TransientProcessingError(f"Callback fetch connection error: {e}") from e
    except requests.exceptions.RequestException as e:
        raise PermanentProcessingError(f"Callback fetch rejected: {e}") from e

    if r.status_code in RETRYABLE_STATUS_CODES:
        raise TransientProcessingError(f"Callback returned HTTP {r.status_code}")
    if r.status_code >= 400:
        raise PermanentProcessingError(f"Callback returned HTTP {r.status_code}")
    return r


def fetch_callback_json(url: str, timeout_s: Optional[float] = None) -> Any:
    r = _get(url, timeout_s)
    try:
        return r.json()
    except ValueError as e:
        raise PermanentProcessingError(f"Callback body is not JSON: {e}") from e


def fetch_callback_bytes(url: str, timeout_s: Optional[float] = None) -> bytes:
    """Raw body, for activity-file callbacks (FIT payloads)."""
    r = _get(url, timeout_s)
    logger.debug(f"Fetched {len(r.content)} bytes from activity file callback")
    return r.content


def fetch_activity_summaries(
    access_token: str,
    upload_start: datetime,
    upload_end: datetime,
    timeout_s: Optional[float] = None,
) -> List[Any]:
    """
    Activity summaries uploaded in ``[upload_start, upload_end)``.

    The API refuses windows longer than 24 hours, so callers ask day by day.
    """
    if not access_token:
        raise PermanentProcessingError("No Garmin access token")
    r = _get(
        f"{settings.GARMIN_API_BASE_URL.rstrip('/')}/wellness-api/rest/activities",
        timeout_s,
        params={
            "uploadStartTimeInSeconds": int(upload_start.timestamp()),
            "uploadEndTimeInSeconds": int(upload_end.timestamp()),
        },
        headers={"Authorization": f"Bearer {access_token}"},
    )
    try:
        body = r.json()
    except ValueError as e:
        raise PermanentProcessingError(f"Activity summaries body is not JSON: {e}") from e
    if not isinstance(body, list):
        raise PermanentProcessingError(f"Activity summaries must be an array, got {type(body).__name__}")
    return body
