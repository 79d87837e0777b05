"""
Error taxonomy for the synchronization engine.

The Transport Client is the only place HTTP status codes are inspected. Every
failure leaving it is one of two classes:

- TransientError: worth retrying (network failure, timeout, 5xx, unexpected
  4xx, malformed body).
- PermissionDeniedError: 401/403, permanent for the current session.

The Poll Scheduler reduces both to a ``TickOutcome`` and never looks at the
exception any further.
"""

from enum import Enum
from typing import Optional


class SyncError(Exception):
    """Base class for all chatsync errors."""


class TransportError(SyncError):
    """A single request to the message API failed."""

    def __init__(self, message: str, operation: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class TransientError(TransportError):
    """Retryable transport failure."""


class PermissionDeniedError(TransportError):
    """
    The session is not allowed to access the conversation (HTTP 401/403).

    Attributes:
        code: machine-readable reason, taken from the response body's
            ``error_code`` when present, otherwise ``unauthorized``/``forbidden``.
    """

    def __init__(self, message: str, operation: str, status_code: int, code: str):
        super().__init__(message, operation, status_code)
        self.code = code


class OwnershipError(SyncError):
    """A user tried to delete a message they did not send."""

    def __init__(self, message_id: str, requester_id: Optional[str]):
        super().__init__(f"user {requester_id} does not own message {message_id}")
        self.message_id = message_id
        self.requester_id = requester_id


class TickOutcome(str, Enum):
    """Closed set of results a poll tick can produce."""

    OK = "ok"
    TRANSIENT = "transient"
    PERMISSION = "permission"
