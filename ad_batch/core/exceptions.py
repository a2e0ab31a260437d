"""Custom exceptions for the advertising batch pipeline."""


# -----------------------------------------------------------------------------
# Application Base Error
# -----------------------------------------------------------------------------


class AppError(Exception):
    """Base application error with HTTP semantics.

    All domain exceptions that should map to HTTP responses inherit from this.
    The global error handler in error_handlers.py catches these and returns
    a consistent JSON response.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str = "An unexpected error occurred", context: dict | None = None):
        self.detail = detail
        self.context = context
        super().__init__(self.detail)


# -----------------------------------------------------------------------------
# Job Submission Exceptions
# -----------------------------------------------------------------------------


class EntityNotFound(AppError):
    """Entity not found by primary key (404)."""

    status_code = 404
    error_code = "NOT_FOUND"


class ValidationError(AppError):
    """Job input rejected before anything is persisted (400). Never retried."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class QuotaExceededError(AppError):
    """Owner has no usable generation provider credential (402)."""

    status_code = 402
    error_code = "QUOTA_EXCEEDED"


class InvalidStateTransition(AppError):
    """Requested job transition is not allowed from the current status (409)."""

    status_code = 409
    error_code = "INVALID_STATE_TRANSITION"


# -----------------------------------------------------------------------------
# Pipeline Exceptions
# -----------------------------------------------------------------------------


class PipelineError(Exception):
    """Base exception for errors raised while processing job items.

    These never reach HTTP clients directly; they end up on the item's
    ``error_message`` or in the logs.
    """

    pass


class ProviderError(PipelineError):
    """Generation provider submission or status check failed.

    Causes:
        - Non-2xx HTTP response
        - Response body with ``code != 200`` or missing fields
        - Provider reported the task as failed
        - Network error talking to the provider

    Retried up to the item retry budget, then terminal for the item.
    """

    pass


class GenerationTimeoutError(PipelineError):
    """Polling budget elapsed without the task reaching a terminal state.

    Treated exactly like ProviderError by the retry policy.
    """

    def __init__(self, message: str = "generation timed out"):
        super().__init__(message)


class PersistenceError(PipelineError):
    """A state store read or write failed.

    The operation that produced it is retried by its caller on the next
    scheduling tick.
    """

    pass


class ConsistencyError(PipelineError):
    """An item write references a job (or item) that no longer exists.

    Usually caused by a concurrent job deletion. The write is discarded since
    the deletion is the authoritative intent.
    """

    pass


RETRYABLE_EXCEPTIONS = (ProviderError, GenerationTimeoutError)
