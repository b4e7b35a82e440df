"""
Shared-secret checks for the service's non-public endpoints.

End-user authentication is handled by the surrounding platform. The endpoints
here are called by trusted uploaders and operators presenting ``X-API-Secret``.
An unset secret rejects everything.
"""
import hmac
from typing import Optional

from fastapi import Header

from core.config import settings
from core.exceptions import UnauthorizedError


def _matches(expected: Optional[str], presented: Optional[str]) -> bool:
    if not expected or not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def require_upload_secret(x_api_secret: Optional[str] = Header(None, alias="X-API-Secret")) -> None:
    if not _matches(settings.ACTIVITY_FILE_UPLOAD_SECRET, x_api_secret):
        raise UnauthorizedError()


def require_internal_secret(x_api_secret: Optional[str] = Header(None, alias="X-API-Secret")) -> None:
    if not _matches(settings.INTERNAL_API_SECRET, x_api_secret):
        raise UnauthorizedError()
