"""
Projector - derives the denormalized read-store shape of an entity from its
write-store post-image.

One entity fans out into several layouts, each keyed for a different access
pattern:

    by_session  - everything belonging to a conversation
    by_parent   - children of a session / turn (turns, steps)
    by_account  - sessions (and anything else stamped with an account) per owner
"""
from typing import Any, Dict

from projection_engine.types.events import ChangeEvent, EntityType, canonical_payload
from projection_engine.types.projection import ProjectedEntity

BY_SESSION = "by_session"
BY_PARENT = "by_parent"
BY_ACCOUNT = "by_account"

LAYOUTS = (BY_SESSION, BY_PARENT, BY_ACCOUNT)


class Projector:
    def partitions(self, entity_type: EntityType, entity_id: str, payload: Dict[str, Any]) -> Dict[str, str]:
        """Partition key per layout; layouts without a key are skipped"""
        keys: Dict[str, Any] = {}

        if entity_type is EntityType.SESSION:
            keys[BY_SESSION] = entity_id
        else:
            keys[BY_SESSION] = payload.get("session_id")

        if entity_type is EntityType.HUMAN_TURN:
            keys[BY_PARENT] = payload.get("parent_id") or payload.get("session_id")
        elif entity_type in (EntityType.AGENT_TURN, EntityType.STEP):
            keys[BY_PARENT] = payload.get("parent_id")

        keys[BY_ACCOUNT] = payload.get("account_id")

        return {layout: str(key) for layout, key in keys.items() if key}

    def project(self, entity_type: EntityType, entity_id: str, version: int,
                payload: Dict[str, Any]) -> ProjectedEntity:
        entity_type = EntityType(entity_type)
        document = canonical_payload(payload)
        document["entity_id"] = entity_id
        document["entity_type"] = entity_type.value
        return ProjectedEntity(
            entity_id=entity_id,
            entity_type=entity_type,
            version=version,
            document=document,
            partitions=self.partitions(entity_type, entity_id, document),
        )

    def project_event(self, event: ChangeEvent) -> ProjectedEntity:
        return self.project(event.entity_type, event.entity_id, event.version, event.payload)

    def project_snapshot(self, snapshot) -> ProjectedEntity:
        """Project a write-store EntitySnapshot or CommitResult"""
        return self.project(snapshot.entity_type, snapshot.entity_id, snapshot.version, snapshot.payload)
