"""
exceptions.py — Error taxonomy for the Offering Engine

Business Rules:
- NotFoundError / ValidationError surface immediately and are never retried
- ConflictError is the only retryable error: refetch state, then retry
- PolicyViolationError aborts the requested operation only; it is not a fault
- ComputationError means a price could not be derived; callers record it
  and keep the manually-maintained price authoritative
- BatchError means a bulk operation was rolled back as a whole; .failures
  names every item that failed and why. It is retryable only when a
  failure is a ConflictError

Called by: services/*, routers/* (via exception handlers in main.py)
"""


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "error_type": type(self).__name__,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(EngineError):
    """Malformed or missing required input."""


class NotFoundError(EngineError):
    """Unknown id."""


class ConflictError(EngineError):
    """Stale version or competing ownership state. Retry after refetch."""

    retryable = True


class PolicyViolationError(EngineError):
    """The request is well-formed but not allowed in the current state."""


class ComputationError(EngineError):
    """A price could not be derived from the current offering data."""


class BatchError(EngineError):
    """A bulk operation failed and nothing in the batch was applied."""

    def __init__(self, message: str, failures: list[dict], **details):
        super().__init__(message, **details)
        self.failures = failures

    @property
    def failure_types(self) -> set[str]:
        return {f.get("error_type") for f in self.failures}

    @property
    def retryable(self) -> bool:
        # Only stale reads can succeed on a plain retry
        return "ConflictError" in self.failure_types

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["failures"] = self.failures
        return data
