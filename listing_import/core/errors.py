"""Exceptions shared across the import pipeline."""


class SourceUnavailable(RuntimeError):
    """Raised when the source dataset cannot be opened or read."""


class RecordValidationError(ValueError):
    """Raised when a single source record cannot be normalized."""


class DuplicateKeyError(RuntimeError):
    """Raised by a store when an insert loses a uniqueness race."""


class TransientStoreError(RuntimeError):
    """Raised for failures that invalidate the whole batch (connection loss, deadlock)."""


class CheckpointCorrupt(RuntimeError):
    """Raised when a persisted checkpoint exists but cannot be parsed."""


class BatchRetryExhausted(RuntimeError):
    """Raised after too many consecutive batch-level failures."""


class AlreadyRunning(RuntimeError):
    """Raised when another import process holds the PID file."""
