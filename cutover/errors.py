"""Exception taxonomy for the migration pipeline."""

from typing import Optional


class CutoverError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(CutoverError):
    """Run configuration is invalid or incomplete."""


class TransientStoreError(CutoverError):
    """A store or object-storage call failed in a way that may succeed on retry."""


class RetryExhaustedError(TransientStoreError):
    """A transient failure persisted through every retry attempt."""

    def __init__(self, message: str, attempts: int = 0, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.original_error = original_error


class StageAbortedError(CutoverError):
    """A whole stage cannot proceed, e.g. a store is unreachable.

    Never downgraded into per-record errors: every remaining record would
    fail the same way.
    """

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class ReconciliationError(CutoverError):
    """A supersede-then-insert sequence failed in one of the stores."""

    def __init__(self, store: str, message: str, deactivated: int = 0):
        super().__init__(f"{store}: {message}")
        self.store = store
        self.deactivated = deactivated
