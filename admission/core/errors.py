"""Application-level exception types.

This module defines the admission error taxonomy used across stores,
limiters and coordinators, enabling consistent error handling, logging,
and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    http_status: int
    retry_after: float
    reset_at: int
    limit: int
    scope: str
    conflicting_key: str
    idempotency_key: str
    replayed: bool
    operation: str
    backend: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
        headers: Extra response headers to render with the error.
    """

    code: str
    message: str
    details: ErrorDetails | None = None
    headers: dict[str, str] | None = None

    status_code = 400

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class RateLimitExceededError(AppError):
    """Raised when the limiting key has used up its budget.

    Recoverable after ``details["reset_at"]``; never retried internally.
    """

    status_code = 429


class IdempotencyKeyConflictError(AppError):
    """Raised when an idempotency key is reused with a different payload."""

    status_code = 409


class HandlerExecutionFailedError(AppError):
    """Raised when the wrapped handler failed, on first run and on replay."""

    status_code = 500


class StoreUnavailableError(AppError):
    """Raised when the key store cannot be reached."""

    status_code = 503


class PendingTimeoutError(AppError):
    """Raised when a duplicate request gave up waiting on an in-flight owner.

    Retryable: the owner may still complete.
    """

    status_code = 409
