"""Shared error types for quizbot_core.

Callers can distinguish between:
  - Service failures of the AI dependency (transient vs permanent).
  - Platform failures (referenced message gone vs missing permissions).
  - Persistence failures from the durable store.

``CircuitOpenError`` lives in :mod:`quizbot_core.circuit_breaker`.
"""

from __future__ import annotations

from enum import StrEnum

from quizbot_core.circuit_breaker.exceptions import CircuitOpenError


class ErrorCategory(StrEnum):
    """Failure categories surfaced to logs and operator replies."""

    TRANSIENT = "transient_service_failure"
    PERMANENT = "permanent_service_failure"
    CIRCUIT_OPEN = "circuit_open"
    EXTERNAL_STATE_MISSING = "external_state_missing"
    PERMISSION_DENIED = "permission_denied"
    PERSISTENCE = "persistence_failure"
    INVALID_REQUEST = "invalid_request"
    UNEXPECTED = "unexpected"


class ServiceError(RuntimeError):
    """Base exception for external AI service failures."""

    def __init__(self, message: str, http_status: int | None = None) -> None:
        """Initialize service-error metadata.

        Args:
            message: Human-readable error message.
            http_status: Optional HTTP status observed from the service.
        """
        super().__init__(message)
        self.http_status = http_status


class TransientServiceFailure(ServiceError):
    """Retry-safe failure: timeouts, overload signals, connection resets."""


class PermanentServiceFailure(ServiceError):
    """Non-retryable failure such as a malformed or unexpected response."""


class PlatformError(RuntimeError):
    """Base exception for chat-platform failures."""


class ExternalStateMissing(PlatformError):
    """Raised when a referenced platform message or poll no longer exists."""


class PermissionDenied(PlatformError):
    """Raised when the platform rejects a call for missing permissions."""


class PersistenceFailure(RuntimeError):
    """Raised when the durable store is unavailable or rejects a write."""


def categorize(exc: BaseException) -> ErrorCategory:
    """Map an exception onto its taxonomy category."""
    if isinstance(exc, TransientServiceFailure):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, PermanentServiceFailure):
        return ErrorCategory.PERMANENT
    if isinstance(exc, CircuitOpenError):
        return ErrorCategory.CIRCUIT_OPEN
    if isinstance(exc, ExternalStateMissing):
        return ErrorCategory.EXTERNAL_STATE_MISSING
    if isinstance(exc, PermissionDenied):
        return ErrorCategory.PERMISSION_DENIED
    if isinstance(exc, PersistenceFailure):
        return ErrorCategory.PERSISTENCE
    return ErrorCategory.UNEXPECTED
