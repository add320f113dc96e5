"""
errors.py - Error taxonomy for the projection engine

Every failure the sync core can surface derives from ProjectionEngineError so
callers can catch the whole family at their boundary.
"""
from typing import Optional


class ProjectionEngineError(Exception):
    """Base class for all projection engine errors"""


class TransientStoreError(ProjectionEngineError):
    """A store call timed out or the store was unavailable. Safe to retry."""

    def __init__(self, message: str, store: Optional[str] = None):
        super().__init__(message)
        self.store = store


class LedgerConflictError(TransientStoreError):
    """Compare-and-set on the ledger kept losing races"""

    def __init__(self, entity_id: str, attempts: int):
        super().__init__(
            f"Ledger compare-and-set for {entity_id} lost {attempts} races in a row",
            store="ledger",
        )
        self.entity_id = entity_id
        self.attempts = attempts


class StaleEventError(ProjectionEngineError):
    """An event whose version is not newer than the last applied version"""

    def __init__(self, entity_id: str, version: int, last_applied_version: int):
        super().__init__(
            f"Event {entity_id}@{version} is stale (last applied {last_applied_version})"
        )
        self.entity_id = entity_id
        self.version = version
        self.last_applied_version = last_applied_version


class ProjectionDivergenceError(ProjectionEngineError):
    """The read store projection does not match the write store"""

    def __init__(self, entity_id: str, expected_version: Optional[int], actual_version: Optional[int], reason: str):
        super().__init__(
            f"Projection for {entity_id} diverged ({reason}): "
            f"expected version {expected_version}, found {actual_version}"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        self.reason = reason


class PermanentApplyFailure(ProjectionEngineError):
    """
    An event exhausted its retry budget. Carried on the DEAD_LETTERED result,
    and raised only when neither the dead-letter queue nor the ledger took it.
    """

    def __init__(self, entity_id: str, version: int, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Giving up on {entity_id}@{version} after {attempts} attempts: {cause}"
        )
        self.entity_id = entity_id
        self.version = version
        self.attempts = attempts
        self.cause = cause


class WriteStoreCommitFailure(ProjectionEngineError):
    """The write store rejected or failed to commit a command"""
