"""
Custom exception classes and error handling.

Two families live here:
- API exceptions: consistent HTTP error responses.
- Pipeline exceptions: the accountability error taxonomy (configuration,
  transient, permanent recipient) used by the scheduler and delivery passes.
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
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
        )


class ConflictError(APIException):
    """Resource conflict (e.g., contact limit reached)."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            error_code="CONFLICT"
        )


# --- Pipeline taxonomy ---


class AccountabilityError(Exception):
    """Base class for accountability pipeline errors."""


class ConfigurationError(AccountabilityError):
    """Missing template, missing secret, or invalid settings. Fatal at startup."""


class TransientError(AccountabilityError):
    """Retryable failure (network, upstream 5xx, rate limiting)."""


class ActivityFetchError(TransientError):
    """Activity records could not be read for a user/period."""


class TransportError(TransientError):
    """A delivery sink failed in a retryable way."""

    def __init__(self, message: str, error_code: str = "network_error"):
        super().__init__(message)
        self.error_code = error_code


class PermanentRecipientError(AccountabilityError):
    """Invalid or unsubscribed recipient. Never retried."""

    def __init__(self, message: str, error_code: str = "invalid_recipient"):
        super().__init__(message)
        self.error_code = error_code


class ContactLimitError(AccountabilityError):
    """User already has the maximum number of active contacts."""
