"""
ProjectedEntity - the denormalized read-store representation of an entity
"""
from dataclasses import dataclass, field
from typing import Any, Dict

from projection_engine.types.events import EntityType


@dataclass(frozen=True)
class ProjectedEntity:
    entity_id: str
    entity_type: EntityType
    version: int
    document: Dict[str, Any] = field(default_factory=dict)
    partitions: Dict[str, str] = field(default_factory=dict)  # layout -> partition key

    def matches(self, other: "ProjectedEntity") -> bool:
        """Same version, same content, same fan-out"""
        return (
            other is not None
            and self.entity_id == other.entity_id
            and self.version == other.version
            and self.document == other.document
            and self.partitions == other.partitions
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_type": self.entity_type.value,
            "version": self.version,
            "document": self.document,
            "partitions": self.partitions,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ProjectedEntity":
        return ProjectedEntity(
            entity_id=d["entity_id"],
            entity_type=EntityType(d["entity_type"]),
            version=int(d["version"]),
            document=d.get("document") or {},
            partitions=d.get("partitions") or {},
        )
