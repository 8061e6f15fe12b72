"""Error hierarchy surfaced to callers of the sync layer.

Connection problems never appear here: they are recovered internally and
only show up as a ConnectionState. Everything below is raised by write
operations (or reported to failure listeners) so the UI can show a toast.
"""
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Why a write did not make it to the store."""
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class GroupOrderError(Exception):
    """Base exception for the package."""
    pass


class SessionNotFoundError(GroupOrderError):
    """The referenced ordering session does not exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class MutationError(GroupOrderError):
    """A write operation failed; any optimistic state was rolled back."""

    reason: FailureReason = FailureReason.FAILED
    default_message = "Write failed"

    def __init__(
        self,
        message: Optional[str] = None,
        key: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.key = key
        self.cause = cause
        super().__init__(message or self.default_message)


class MutationTimeoutError(MutationError):
    """The store did not acknowledge the write in time."""
    reason = FailureReason.TIMEOUT
    default_message = "The store did not respond in time, try again"


class DeliveryExpiredError(MutationTimeoutError):
    """An optimistic entity was neither acknowledged nor echoed before its deadline."""
    default_message = "Message not delivered, try again"


class MutationNotFoundError(MutationError):
    """The session (or row) the write refers to no longer exists."""
    reason = FailureReason.NOT_FOUND
    default_message = "The session no longer exists"


class MutationFailedError(MutationError):
    """Generic store-side failure."""
    reason = FailureReason.FAILED


__all__ = [
    "FailureReason",
    "GroupOrderError",
    "SessionNotFoundError",
    "MutationError",
    "MutationTimeoutError",
    "DeliveryExpiredError",
    "MutationNotFoundError",
    "MutationFailedError",
]
