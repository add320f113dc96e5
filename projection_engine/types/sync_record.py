"""
SyncRecord - per-entity convergence state kept in the Synchronization Ledger
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from projection_engine.types.events import EntityType


class DualWriteStatus(str, Enum):
    NONE = "None"
    PENDING = "Pending"
    APPLIED = "Applied"
    FAILED = "Failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class SyncRecord:
    """
    Ledger entry for one entity.

    Records are immutable values; every mutation produces a new record via
    the helper methods below and is persisted with compare-and-set on
    `revision`. A revision of 0 means the record has never been stored.
    """
    entity_id: str
    entity_type: EntityType
    last_applied_version: int = 0
    dual_write_status: DualWriteStatus = DualWriteStatus.NONE
    dual_write_version: Optional[int] = None
    last_reconciled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    revision: int = 0
    repair_pending: bool = False
    repair_failures: int = 0
    tombstoned_at: Optional[datetime] = None

    @staticmethod
    def new(entity_id: str, entity_type: EntityType) -> "SyncRecord":
        return SyncRecord(entity_id=entity_id, entity_type=EntityType(entity_type))

    @property
    def exists(self) -> bool:
        return self.revision > 0

    # ---- transitions -------------------------------------------------

    def applied(self, version: int) -> "SyncRecord":
        """CDC applied `version`; clears any dual-write it supersedes"""
        changes: Dict[str, Any] = {
            "last_applied_version": max(self.last_applied_version, version),
            "updated_at": utcnow(),
            "tombstoned_at": None,
        }
        if self.dual_write_status is not DualWriteStatus.NONE and version >= (self.dual_write_version or 0):
            changes["dual_write_status"] = DualWriteStatus.NONE
            changes["dual_write_version"] = None
        return replace(self, **changes)

    def dual_write_started(self, version: int) -> "SyncRecord":
        return replace(
            self,
            dual_write_status=DualWriteStatus.PENDING,
            dual_write_version=version,
            updated_at=utcnow(),
        )

    def dual_write_applied(self, version: int) -> "SyncRecord":
        return replace(
            self,
            dual_write_status=DualWriteStatus.APPLIED,
            last_applied_version=max(self.last_applied_version, version),
            updated_at=utcnow(),
        )

    def dual_write_failed(self) -> "SyncRecord":
        return replace(self, dual_write_status=DualWriteStatus.FAILED, updated_at=utcnow())

    def reconciled(self, source_version: int, tombstoned: bool = False) -> "SyncRecord":
        now = utcnow()
        changes: Dict[str, Any] = {
            "last_applied_version": max(self.last_applied_version, source_version),
            "last_reconciled_at": now,
            "updated_at": now,
            "repair_pending": False,
            "repair_failures": 0,
            "tombstoned_at": (self.tombstoned_at or now) if tombstoned else None,
        }
        # A dual-write newer than what we read from the source is still in flight
        if source_version >= (self.dual_write_version or 0):
            changes["dual_write_status"] = DualWriteStatus.NONE
            changes["dual_write_version"] = None
        return replace(self, **changes)

    def repair_requested(self) -> "SyncRecord":
        return replace(self, repair_pending=True, updated_at=utcnow())

    def repair_failed(self) -> "SyncRecord":
        return replace(self, repair_failures=self.repair_failures + 1, updated_at=utcnow())

    # ---- serialization -----------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "last_applied_version": self.last_applied_version,
            "dual_write_status": self.dual_write_status.value,
            "dual_write_version": self.dual_write_version,
            "last_reconciled_at": _iso(self.last_reconciled_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "revision": self.revision,
            "repair_pending": self.repair_pending,
            "repair_failures": self.repair_failures,
            "tombstoned_at": _iso(self.tombstoned_at),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "SyncRecord":
        return SyncRecord(
            entity_id=d["entity_id"],
            entity_type=EntityType(d["entity_type"]),
            last_applied_version=int(d.get("last_applied_version", 0)),
            dual_write_status=DualWriteStatus(d.get("dual_write_status", DualWriteStatus.NONE.value)),
            dual_write_version=d.get("dual_write_version"),
            last_reconciled_at=_ts(d.get("last_reconciled_at")),
            created_at=_ts(d.get("created_at")) or utcnow(),
            updated_at=_ts(d.get("updated_at")) or utcnow(),
            revision=int(d.get("revision", 0)),
            repair_pending=bool(d.get("repair_pending", False)),
            repair_failures=int(d.get("repair_failures", 0)),
            tombstoned_at=_ts(d.get("tombstoned_at")),
        )
