"""Agora error hierarchy.

All agora-specific errors inherit from AgoraError for easy catching.
``FanOutPartialFailure`` and ``DispatchFailure`` are logged where they occur
and never reach the writer that triggered them.
"""


class AgoraError(Exception):
    """Base error for all agora operations."""


class ValidationError(AgoraError):
    """Input rejected before persistence (bad enum value, oversized text)."""


class ConflictError(AgoraError):
    """A uniqueness race was lost twice in a row."""


class NotFoundError(AgoraError):
    """A referenced user, target or notification does not exist."""


class FanOutPartialFailure(AgoraError):
    """One recipient of a notification fan-out could not be notified."""


class DispatchFailure(AgoraError):
    """A subscriber could not receive a broadcast event."""


class ForbiddenError(AgoraError):
    """The acting user does not own the entity they tried to change."""
