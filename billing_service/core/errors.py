"""Typed error hierarchy shared by the store, the Stripe gateway and the API.

Every failure the service can report maps to exactly one subclass of
:class:`BillingError`.  Each class carries the response ``type``, the
default machine ``code`` and the HTTP status used by the exception
handlers in :mod:`billing_service.api.error_handlers`.  Lower layers raise
these errors; the HTTP boundary is the only place that turns them into
responses.
"""

from __future__ import annotations

from typing import Any, Optional


class BillingError(Exception):
    """Base class for all service errors."""

    error_type: str = "internal_error"
    default_code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        description: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.description = description
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "type": self.error_type,
            "code": self.code,
            "message": self.message,
        }
        if self.description:
            body["description"] = self.description
        if self.field:
            body["field"] = self.field
        return body


class InputValidationError(BillingError):
    """Request shape or constraint violation."""

    error_type = "validation_error"
    default_code = "VALIDATION_FAILED"
    status_code = 400


class AuthError(BillingError):
    """API key problems."""

    error_type = "auth_error"
    default_code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class InvalidSignatureError(AuthError):
    """Stripe webhook signature mismatch. Reported as 400 so Stripe does not retry."""

    default_code = "INVALID_SIGNATURE"
    status_code = 400


class NotFoundError(BillingError):
    error_type = "not_found"
    default_code = "RESOURCE_NOT_FOUND"
    status_code = 404


class ConflictError(BillingError):
    """Uniqueness violation.

    ``existing`` holds the row that owns the contested key when the store
    detected the conflict itself (``None`` for races caught by the database).
    """

    error_type = "conflict"
    default_code = "CONFLICT"
    status_code = 409

    def __init__(self, message: str, *, existing: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.existing = existing


class ProviderError(BillingError):
    """Stripe rejected the call for a non-retryable reason."""

    error_type = "provider_error"
    default_code = "PROVIDER_ERROR"
    status_code = 502


class TransientError(BillingError):
    """Retryable failure: pool exhaustion, timeouts, connection loss, provider throttling."""

    error_type = "transient_error"
    default_code = "SERVICE_UNAVAILABLE"
    status_code = 503


class FatalError(BillingError):
    """Schema or constraint errors that will not succeed on retry."""

    error_type = "internal_error"
    default_code = "INTERNAL_ERROR"
    status_code = 500


__all__ = [
    "BillingError",
    "InputValidationError",
    "AuthError",
    "InvalidSignatureError",
    "NotFoundError",
    "ConflictError",
    "ProviderError",
    "TransientError",
    "FatalError",
]
