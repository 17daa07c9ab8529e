"""Error taxonomy shared by the source client, sync orchestrator and services."""

from __future__ import annotations

from typing import Optional


class DevMetricsError(Exception):
    """Base class for all domain errors."""

    kind = "error"


class SourceError(DevMetricsError):
    """Failure reported by (or while talking to) the remote source."""

    kind = "source"

    def __init__(self, message: str, *, status_code: Optional[int] = None, resource: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.resource = resource


class UnauthorizedError(SourceError):
    """Credential invalid, expired or lacking access. Fatal to a sync run."""

    kind = "unauthorized"


class RateLimitedError(SourceError):
    """Remote rate limit hit; `retry_after` is the hinted wait in seconds."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: float = 0.0,
        status_code: Optional[int] = None,
        resource: Optional[str] = None,
    ) -> None:
        super().__init__(message, status_code=status_code, resource=resource)
        self.retry_after = max(float(retry_after), 0.0)


class NotFoundError(SourceError):
    """Remote resource no longer exists."""

    kind = "not_found"


class TransientError(SourceError):
    """Network failure, timeout or 5xx; safe to retry."""

    kind = "transient"


class ValidationError(DevMetricsError):
    """Malformed remote payload; the single record is skipped."""

    kind = "validation"


class ConflictError(DevMetricsError):
    """Upsert race that could not be resolved by re-reading the winner."""

    kind = "conflict"


class MissingAuthorizationError(DevMetricsError):
    """Organization has no installation handle or credential. Fatal to a sync run."""

    kind = "missing_authorization"


class CategoryError(DevMetricsError):
    """Rejected category operation, carrying the HTTP status it maps to."""

    kind = "category"

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


RETRYABLE_ERRORS = (RateLimitedError, TransientError)
