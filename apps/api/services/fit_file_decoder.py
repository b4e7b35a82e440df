"""
Thin adapter over the Garmin FIT SDK.

Binary decoding is the SDK's job; this module only picks the session summary
out of the decoded messages and works out which external account the file
belongs to.
"""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from garmin_fit_sdk import Decoder, Stream

from core.exceptions import PermanentProcessingError

# Exported files are commonly named after the account, e.g. "1234567_2024-05-01.fit".
_FILENAME_USER_ID_RE = re.compile(r"(\d{6,})")


@dataclass
class UploadedActivityRecord:
    file_name: str
    content_sha256: str
    start_time: datetime
    external_user_id: Optional[str] = None
    sport: Optional[str] = None
    name: Optional[str] = None
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


def _first(messages: Dict[str, List[Dict[str, Any]]], key: str) -> Dict[str, Any]:
    rows = messages.get(key) or []
    return rows[0] if rows else {}


def _pick(row: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def external_user_id_from_filename(file_name: str) -> Optional[str]:
    m = _FILENAME_USER_ID_RE.search(os.path.basename(file_name or ""))
    return m.group(1) if m else None


def resolve_external_user_id(messages: Dict[str, List[Dict[str, Any]]], file_name: str) -> Optional[str]:
    """file_id serial, then the first device serial, then a digit run in the filename."""
    serial = _first(messages, "file_id_mesgs").get("serial_number")
    if serial:
        return str(serial)
    for device in messages.get("device_info_mesgs") or []:
        if device.get("serial_number"):
            return str(device["serial_number"])
    return external_user_id_from_filename(file_name)


def record_from_messages(
    messages: Dict[str, List[Dict[str, Any]]],
    file_name: str,
    content_sha256: str,
) -> UploadedActivityRecord:
    session = _first(messages, "session_mesgs")
    if not session:
        raise PermanentProcessingError(f"{file_name}: no session message in FIT file")

    start_time = _pick(session, "start_time", "timestamp")
    if not isinstance(start_time, datetime):
        raise PermanentProcessingError(f"{file_name}: session has no start time")
    if start_time.tzinfo is None:
        start_time = start_time.replace(tzinfo=timezone.utc)

    sport = session.get("sport")
    return UploadedActivityRecord(
        file_name=file_name,
        content_sha256=content_sha256,
        start_time=start_time,
        external_user_id=resolve_external_user_id(messages, file_name),
        sport=str(sport) if sport is not None else None,
        name=os.path.splitext(os.path.basename(file_name))[0] or None,
        duration_s=_as_int(_pick(session, "total_elapsed_time", "total_timer_time")),
        distance_m=_as_float(session.get("total_distance")),
        elevation_gain_m=_as_float(session.get("total_ascent")),
        avg_heart_rate=_as_int(session.get("avg_heart_rate")),
        max_heart_rate=_as_int(session.get("max_heart_rate")),
        avg_power=_as_int(session.get("avg_power")),
        max_power=_as_int(session.get("max_power")),
        avg_cadence=_as_int(session.get("avg_cadence")),
        avg_speed_mps=_as_float(_pick(session, "enhanced_avg_speed", "avg_speed")),
        max_speed_mps=_as_float(_pick(session, "enhanced_max_speed", "max_speed")),
    )


def decode_fit_bytes(content: bytes, file_name: str) -> UploadedActivityRecord:
    if not content:
        raise PermanentProcessingError(f"{file_name}: empty file")

    stream = Stream.from_byte_array(bytearray(content))
    decoder = Decoder(stream)
    if not decoder.is_fit():
        raise PermanentProcessingError(f"{file_name}: not a FIT file")

    messages, errors = decoder.read()
    if errors:
        raise PermanentProcessingError(f"{file_name}: FIT decode failed: {errors[0]}")

    return record_from_messages(messages, file_name, hashlib.sha256(content).hexdigest())
