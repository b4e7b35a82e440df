"""
Custom exception classes and error handling.

Two families live here:
- ``APIException`` subclasses, rendered as consistent HTTP error responses.
- ``ProcessingError`` subclasses, raised inside the ingestion pipeline and
  translated into retry-scheduler transitions (never into HTTP errors).
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            error_code=error_code
        )


class UnauthorizedError(APIException):
    """Missing or wrong shared secret."""

    def __init__(self, detail: str = "Invalid API secret"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
        )


class PayloadTooLargeError(APIException):
    def __init__(self, max_bytes: int):
        super().__init__(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {max_bytes} byte limit",
            error_code="PAYLOAD_TOO_LARGE"
        )


class ServiceUnavailableError(APIException):
    """A dependency (broker, database) is down; the caller should retry later."""

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE",
            headers={"Retry-After": "60"},
        )


class ProcessingError(Exception):
    """Base class for failures while turning a notification into activities."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransientProcessingError(ProcessingError):
    """Upstream timeout, connection failure, lock contention. Safe to retry."""

    retryable = True


class PermanentProcessingError(ProcessingError):
    """Malformed payload or unknown kind. Retrying cannot help."""

    retryable = False
