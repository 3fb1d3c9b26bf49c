"""Error taxonomy for the sync pipeline.

The supervisor maps each class to a different outcome:

- TransientError: retried according to the stage policy.
- ItemValidationError: never retried, the unit is dropped and counted.
- ConsistencySkip: reported as success with a skip marker.
- FatalSyncError: aborts the whole session.
"""


class SyncError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class TransientError(SyncError):
    """Network timeouts, rate limits and other retryable I/O failures."""


class ItemValidationError(SyncError):
    """A unit is missing a required identifier or is otherwise malformed."""


class ConsistencySkip(SyncError):
    """A downstream prerequisite is missing; retries cannot fix it."""


class FatalSyncError(SyncError):
    """Manifest unreachable, authentication failure or unknown supplier."""
