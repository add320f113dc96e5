"""
Event model for the sync core: change events emitted by the write store
and the commands that produce them.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List


class EntityType(str, Enum):
    """Entity kinds tracked by the conversational data platform"""
    SESSION = "Session"
    HUMAN_TURN = "HumanTurn"
    AGENT_TURN = "AgentTurn"
    STEP = "Step"


class Operation(str, Enum):
    UPSERT = "Upsert"
    DELETE = "Delete"


# Relationship fields a post-image must carry so it can be fanned out
REQUIRED_FIELDS: Dict[EntityType, List[str]] = {
    EntityType.SESSION: ["account_id"],
    EntityType.HUMAN_TURN: ["session_id"],
    EntityType.AGENT_TURN: ["session_id", "parent_id"],
    EntityType.STEP: ["session_id", "parent_id"],
}


def canonical_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a payload through JSON so every path (dual-write, CDC,
    reconciliation) sees the exact same representation.
    """
    return json.loads(json.dumps(payload or {}, sort_keys=True, default=str))


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class ChangeEvent:
    """One committed mutation of one entity. Immutable once emitted."""
    entity_type: EntityType
    entity_id: str
    version: int
    operation: Operation
    payload: Dict[str, Any] = field(default_factory=dict)
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        # frozen dataclass: coerce through object.__setattr__
        object.__setattr__(self, "entity_type", EntityType(self.entity_type))
        object.__setattr__(self, "operation", Operation(self.operation))
        if self.version <= 0:
            raise ValueError(f"version must be positive, got {self.version}")
        if not self.entity_id:
            raise ValueError("entity_id must not be empty")

    @property
    def is_delete(self) -> bool:
        return self.operation is Operation.DELETE

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ChangeEvent":
        return ChangeEvent(
            entity_type=EntityType(d["entity_type"]),
            entity_id=d["entity_id"],
            version=int(d["version"]),
            operation=Operation(d["operation"]),
            payload=canonical_payload(d.get("payload") or {}),
            committed_at=_parse_timestamp(d["committed_at"]) if d.get("committed_at") else datetime.now(timezone.utc),
        )

    @staticmethod
    def from_log_row(row: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a change_log row (payload stored as JSON text)"""
        return ChangeEvent(
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            version=int(row["lsn"]),
            operation=Operation(row["operation"]),
            payload=json.loads(row["payload"]) if row.get("payload") else {},
            committed_at=_parse_timestamp(row["committed_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "version": self.version,
            "operation": self.operation.value,
            "payload": self.payload,
            "committed_at": self.committed_at.isoformat(),
        }


@dataclass
class Command:
    """A mutation to run against the write store"""
    entity_type: EntityType
    entity_id: str
    operation: Operation = Operation.UPSERT
    payload: Dict[str, Any] = field(default_factory=dict)
    latency_critical: bool = False

    def __post_init__(self):
        self.entity_type = EntityType(self.entity_type)
        self.operation = Operation(self.operation)
        self.validate()

    def validate(self) -> None:
        errors = []

        if not self.entity_id:
            errors.append("entity_id must not be empty")

        if self.operation is Operation.UPSERT:
            for name in REQUIRED_FIELDS[self.entity_type]:
                if not self.payload.get(name):
                    errors.append(f"{self.entity_type.value} payload requires '{name}'")

        if errors:
            raise ValueError(f"Invalid command: {'; '.join(errors)}")

    @staticmethod
    def from_dict(d: dict) -> "Command":
        return Command(
            entity_type=d.get("entity_type"),
            entity_id=d.get("entity_id"),
            operation=d.get("operation", Operation.UPSERT.value),
            payload=d.get("payload") or {},
            latency_critical=d.get("latency_critical", False),
        )
