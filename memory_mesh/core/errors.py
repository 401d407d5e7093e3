"""
Error taxonomy for the enrichment and retrieval pipeline.

Retryable errors are transient upstream failures eligible for backoff.
Fatal errors end a job immediately. Duplicates are not errors and are
reported as results by the deduplicator.
"""

from typing import Optional


RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

RETRYABLE_MESSAGE_MARKERS = ("overloaded", "unavailable", "rate limit", "quota")

AUTH_MESSAGE_MARKERS = ("api key", "authentication", "permission denied", "unauthenticated")


class MemoryMeshError(Exception):
    """Base class for pipeline errors."""
    pass


class RetryableError(MemoryMeshError):
    """Transient failure (rate limit, overload, 5xx) eligible for retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(RetryableError):
    """Upstream rate limit or quota hit."""

    def __init__(self, message: str, status_code: Optional[int] = 429):
        super().__init__(message, status_code)


class ProviderUnavailableError(RetryableError):
    """Upstream service overloaded or unavailable."""

    def __init__(self, message: str, status_code: Optional[int] = 503):
        super().__init__(message, status_code)


class FatalError(MemoryMeshError):
    """Failure that must not be retried."""
    pass


class InvalidInputError(FatalError, ValueError):
    """Invalid request or payload."""
    pass


class NotFoundError(FatalError):
    """Referenced record does not exist."""
    pass


class AuthenticationError(FatalError):
    """Provider credentials missing or rejected."""
    pass


class JobCancelledError(FatalError):
    """Cancellation was requested for the running job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class RetryExhaustedError(FatalError):
    """A retryable operation failed on every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ShapeMismatchError(MemoryMeshError, ValueError):
    """Vectors of different dimensionality were compared."""
    pass


def _status_code_of(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether an error belongs to the retryable class.

    Args:
        error: Raised exception

    Returns:
        bool: True for rate limits, overloads and 5xx-class failures

    Example:
        >>> is_retryable(RateLimitError("slow down"))
        True
        >>> is_retryable(JobCancelledError("job-1"))
        False
    """
    if isinstance(error, FatalError):
        return False
    if isinstance(error, RetryableError):
        return True

    status = _status_code_of(error)
    if status in RETRYABLE_STATUS_CODES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


def classify_provider_error(error: BaseException) -> MemoryMeshError:
    """
    Map a raw provider SDK exception onto the pipeline taxonomy.

    Args:
        error: Exception raised by the provider client

    Returns:
        MemoryMeshError: Retryable or fatal equivalent of the error
    """
    if isinstance(error, MemoryMeshError):
        return error

    message = str(error)
    lowered = message.lower()
    status = _status_code_of(error)

    if status == 429 or "rate limit" in lowered or "quota" in lowered:
        return RateLimitError(f"Provider rate limit exceeded: {message}", status or 429)

    if is_retryable(error):
        return ProviderUnavailableError(f"Provider unavailable: {message}", status or 503)

    if status in (401, 403) or any(marker in lowered for marker in AUTH_MESSAGE_MARKERS):
        return AuthenticationError(f"Provider authentication error: {message}")

    return FatalError(f"Provider call failed: {message}")
