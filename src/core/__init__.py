"""Core modules for Group Order Sync."""
from .config import Settings, settings
from .errors import (
    DeliveryExpiredError,
    FailureReason,
    GroupOrderError,
    MutationError,
    MutationFailedError,
    MutationNotFoundError,
    MutationTimeoutError,
    SessionNotFoundError,
)
from .logging_config import configure_logging

__all__ = [
    "Settings",
    "settings",
    "configure_logging",
    "FailureReason",
    "GroupOrderError",
    "SessionNotFoundError",
    "MutationError",
    "MutationTimeoutError",
    "DeliveryExpiredError",
    "MutationNotFoundError",
    "MutationFailedError",
]
