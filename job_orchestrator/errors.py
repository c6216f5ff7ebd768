"""Exception hierarchy for the job lifecycle orchestrator.

Every error carries a ``retryable`` flag. The activity retry policy
consults it: transient infrastructure failures are retried with backoff,
business-rule violations surface immediately.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    retryable = False


class ConfigError(OrchestratorError):
    """Configuration file or override is invalid."""


class NotFoundError(OrchestratorError):
    """A job, worker, transaction or execution does not exist."""


class AuthorizationError(OrchestratorError):
    """The acting user is not allowed to perform the operation."""


class InvalidTransitionError(OrchestratorError):
    """A lifecycle move is not permitted from the current state."""


class TransactionStateError(OrchestratorError):
    """A financial operation conflicts with the transaction's state."""


class PricingError(OrchestratorError):
    """The job could not be priced."""


class GatewayError(OrchestratorError):
    """The payment gateway rejected the request."""

    def __init__(self, message: str, code: Optional[str] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.response = response or {}


class GatewayUnavailableError(OrchestratorError):
    """The payment gateway timed out or returned a server error."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ActivityFailedError(OrchestratorError):
    """An activity failed permanently (non-retryable or retries exhausted)."""

    def __init__(self, activity: str, attempts: int, cause: BaseException):
        super().__init__(f"{activity} failed after {attempts} attempt(s): {cause}")
        self.activity = activity
        self.attempts = attempts
        self.cause = cause


def is_retryable(error: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    if isinstance(error, OrchestratorError):
        return error.retryable
    return isinstance(error, Exception)
