"""Application-level exception types.

Domain errors shared by adapters, the caching layer and the rate governor,
so that logging and HTTP responses stay consistent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    backend: str
    operation: str
    limit: int
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class BackendUnavailableError(AppError):
    """Raised when a counter store call fails (network, auth or protocol).

    Recovered inside the caching layer and the rate governor; never reaches
    the HTTP caller.
    """


@dataclass
class RateLimitExceededError(AppError):
    """Raised when a caller has used up the admissions of the current window.

    Attributes:
        retry_after: Seconds the caller is told to wait (the full window).
        limit: Admission ceiling of the governor that rejected the request.
    """

    retry_after: int = 0
    limit: int = 0
