"""Sync-specific exceptions."""


class SyncError(Exception):
    """Base exception for sync errors."""


class ValidationError(SyncError):
    """Raised when an enqueue, cleanup or resolution request is malformed.

    Never queued: surfaces synchronously to the caller.
    """


class NotFoundError(SyncError):
    """Raised when a queue item is missing or owned by another user."""


class ConflictError(SyncError):
    """Raised when the authoritative store changed under a queued mutation."""


class TransientError(SyncError):
    """Raised when applying a mutation failed for a reason worth retrying."""


class InvalidResolutionError(SyncError):
    """Raised for an unsupported resolution strategy or missing merge data."""
