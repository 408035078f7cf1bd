"""Error taxonomy shared by the reconcile core and its boundaries."""

from typing import Optional


class OperatorError(Exception):
    """Base class for operator errors."""

    reason = "Error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(OperatorError):
    """Malformed spec or annotation. Terminal for the current generation."""

    reason = "InvalidSpec"


class ConflictError(OperatorError):
    """Stale version on write. Retried immediately after a re-read."""

    reason = "Conflict"


class TransientError(OperatorError):
    """Network, rate-limit or 5xx failure. Retried with backoff."""

    reason = "Transient"


class NotFoundError(OperatorError):
    """Resource does not exist on the remote side."""

    reason = "NotFound"


class DependencyNotReadyError(OperatorError):
    """A referenced resource has no external id yet."""

    reason = "DependencyNotReady"
