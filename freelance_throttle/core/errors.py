"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep shapes consistent without forcing every
    error to carry every field.
    """

    code: str
    message: str
    hint: str
    command: str
    policy: str
    limit: int
    remaining: int
    reset_at: int
    retry_after: int
    attempts: int
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
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ConfigurationAppError(AppError):
    """Raised when configuration is inconsistent (e.g. unknown policy name)."""


class UnknownPolicyError(ConfigurationAppError, KeyError):
    """Raised when a rate limit policy name is not declared."""


class CacheError(AppError):
    """Base class for cache backend failures."""


class CacheUnavailableError(CacheError):
    """Raised when a strict command is issued while the backend is down."""


class CacheConnectionError(CacheError):
    """Raised when the backend cannot be reached within the retry budget."""


class CacheCommandError(CacheError):
    """Raised when the backend rejects or fails a command."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised by the request gate when a policy quota is exhausted.

    Not a system failure: it is translated into a 429 response by its own
    handler and never reaches the generic 500 handler.
    """

    status_code: int = 429
    headers: dict[str, str] = field(default_factory=dict)
