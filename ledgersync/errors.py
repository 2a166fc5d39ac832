"""
Error taxonomy for the accounting sync engine.

Every error raised by the engine derives from SyncError and carries a stable
machine-readable code, the HTTP status the API surface answers with, and a
context dict for structured logging. Retry decisions made by the Celery tasks
and the provider client are driven by is_retryable_error / get_retry_delay.
"""

import random
from typing import Any, Optional


class SyncError(Exception):
    """
    Base class for all sync engine errors.

    Attributes:
        code: Stable error code (e.g. "SYNC_ALREADY_RUNNING")
        status_code: HTTP status code reported by the API layer
        is_operational: True for expected runtime conditions, False for bugs
        context: Extra structured context for logs and API responses
    """

    code = "SYNC_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        context: Optional[dict[str, Any]] = None,
        is_operational: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.is_operational = is_operational

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Authentication / token errors
# =============================================================================


class AuthenticationRequiredError(SyncError):
    """Raised when the integration must be re-authorized by the user."""

    code = "AUTHENTICATION_REQUIRED"
    status_code = 401


class InvalidGrantError(AuthenticationRequiredError):
    """Raised when the provider rejects the refresh token (invalid_grant)."""

    code = "INVALID_GRANT"


class TokenRefreshError(SyncError):
    """Raised when a token refresh fails for a transient reason."""

    code = "TOKEN_REFRESH_FAILED"
    status_code = 502


# =============================================================================
# Provider errors
# =============================================================================


class RateLimitError(SyncError):
    """Raised when the provider answers with a rate-limit response."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(
        self,
        message: str = "Provider rate limit exceeded",
        retry_after: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context=context)
        self.retry_after = retry_after


class ProviderAPIError(SyncError):
    """
    Raised when a provider API call fails.

    Attributes:
        provider_status: HTTP status returned by the provider, None for
            network-level failures
    """

    code = "PROVIDER_API_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        provider_status: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context=context)
        self.provider_status = provider_status


class DataValidationError(SyncError):
    """Raised when a remote record cannot be mapped to a local record."""

    code = "DATA_VALIDATION_ERROR"
    status_code = 400


# =============================================================================
# Orchestration errors
# =============================================================================


class IntegrationNotFoundError(SyncError):
    code = "INTEGRATION_NOT_FOUND"
    status_code = 404


class IntegrationInactiveError(SyncError):
    code = "INTEGRATION_NOT_ACTIVE"
    status_code = 409


class InvalidAuthError(SyncError):
    code = "INTEGRATION_INVALID_AUTH"
    status_code = 409


class SyncAlreadyRunningError(SyncError):
    code = "SYNC_ALREADY_RUNNING"
    status_code = 409


class SyncJobNotFoundError(SyncError):
    code = "SYNC_JOB_NOT_FOUND"
    status_code = 404


class InvalidSyncJobStateError(SyncError):
    """Raised when a sync job transition is not allowed from its current status."""

    code = "INVALID_SYNC_JOB_STATE"
    status_code = 409


class BatchFinalizedError(SyncError):
    """Raised when an import batch is finalized or updated after finalization."""

    code = "IMPORT_BATCH_FINALIZED"
    status_code = 409


class StorageError(SyncError):
    """Base exception for all storage operation failures."""

    code = "STORAGE_ERROR"
    status_code = 500


# =============================================================================
# Retry classification
# =============================================================================

RETRYABLE_PROVIDER_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether a failed job attempt should be retried.

    Rate limits, transient token refresh failures, and provider failures with
    a transient status (or no status, i.e. network errors) are retryable.
    Authentication, validation and orchestration errors are not.

    Args:
        error: Exception raised by the failed attempt

    Returns:
        True if the attempt may be retried
    """
    if isinstance(error, (RateLimitError, TokenRefreshError)):
        return True
    if isinstance(error, ProviderAPIError):
        return error.provider_status is None or error.provider_status in RETRYABLE_PROVIDER_STATUSES
    return False


def get_retry_delay(
    error: Optional[BaseException],
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.3,
) -> float:
    """
    Compute the backoff delay before retry number `attempt` (1-based).

    Exponential backoff capped at max_delay with up to `jitter` (fraction)
    of random spread. A provider-supplied Retry-After wins when larger.

    Args:
        error: Exception that caused the retry, if any
        attempt: Attempt number that just failed (1 for the first attempt)
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound in seconds
        jitter: Fraction of the delay added as random jitter

    Returns:
        Delay in seconds
    """
    delay = min(base_delay * (2 ** max(attempt - 1, 0)), max_delay)
    if jitter:
        delay = min(delay + delay * jitter * random.random(), max_delay)
    if isinstance(error, RateLimitError) and error.retry_after:
        delay = max(delay, min(error.retry_after, max_delay))
    return delay
