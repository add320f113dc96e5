"""
Result types returned by the consumer, the dual-write coordinator and the reconciler
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import pyarrow as pa

from projection_engine.errors import ProjectionDivergenceError


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    entity_id: str
    version: int
    attempts: int = 1
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def applied(self) -> bool:
        return self.outcome is ApplyOutcome.APPLIED

    @property
    def skipped(self) -> bool:
        return self.outcome is ApplyOutcome.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "entity_id": self.entity_id,
            "version": self.version,
            "attempts": self.attempts,
            "reason": self.reason,
            "error": str(self.error) if self.error else None,
        }


class ProjectionOutcome(str, Enum):
    """What happened to the immediate read-side projection of a command"""
    NOT_ATTEMPTED = "not_attempted"
    APPLIED = "applied"
    FAILED = "failed"
    DEFERRED = "deferred"  # left to CDC or the reconciler


@dataclass
class CommitResult:
    """What the write store hands back from a committed transaction"""
    entity_type: Any
    entity_id: str
    version: int
    operation: Any
    payload: Dict[str, Any]
    committed_at: datetime


@dataclass
class Committed:
    entity_id: str
    version: int
    committed_at: datetime
    projection: ProjectionOutcome = ProjectionOutcome.NOT_ATTEMPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "version": self.version,
            "committed_at": self.committed_at.isoformat(),
            "projection": self.projection.value,
        }


class EntityOutcome(str, Enum):
    CONSISTENT = "consistent"
    RECONCILED = "reconciled"
    TOMBSTONED = "tombstoned"
    FAILED = "failed"


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    selected: int = 0
    reconciled: int = 0
    consistent: int = 0
    tombstoned: int = 0
    failed: int = 0
    alerts: List[str] = field(default_factory=list)
    divergences: List[ProjectionDivergenceError] = field(default_factory=list)
    outcomes: Dict[str, EntityOutcome] = field(default_factory=dict)

    def record(self, entity_id: str, outcome: EntityOutcome):
        self.outcomes[entity_id] = outcome
        if outcome is EntityOutcome.CONSISTENT:
            self.consistent += 1
        elif outcome is EntityOutcome.RECONCILED:
            self.reconciled += 1
        elif outcome is EntityOutcome.TOMBSTONED:
            self.tombstoned += 1
        else:
            self.failed += 1

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration": self.duration,
            "selected": self.selected,
            "reconciled": self.reconciled,
            "consistent": self.consistent,
            "tombstoned": self.tombstoned,
            "failed": self.failed,
            "alerts": list(self.alerts),
            "divergences": [str(d) for d in self.divergences],
        }

    def to_arrow(self) -> pa.Table:
        """Per-entity outcomes as an Arrow table, sorted by entity id"""
        ids = sorted(self.outcomes)
        return pa.table({
            "entity_id": pa.array(ids, type=pa.string()),
            "outcome": pa.array([self.outcomes[i].value for i in ids], type=pa.string()),
        })
