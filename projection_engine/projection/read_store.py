"""
Read store interface and the in-process implementation.

Writes are conditional on version: an upsert lands only if its version is at
least the stored one and newer than any tombstone; a delete lands only if no
newer projection is stored. Re-applying the same version is harmless, which is
what makes every projection write safe to retry.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set

from projection_engine.types.projection import ProjectedEntity


class ReadStore(ABC):
    @abstractmethod
    async def get(self, entity_id: str) -> Optional[ProjectedEntity]:
        pass

    @abstractmethod
    async def upsert(self, projection: ProjectedEntity, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        """
        Write a projection into every layout it fans out to. Returns True if written.

        `force` skips the version check; with `expected_version` set, a forced
        write lands only while the store still holds that version.
        """

    @abstractmethod
    async def delete(self, entity_id: str, version: int, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        """Remove an entity from all layouts and leave a tombstone at `version`"""

    @abstractmethod
    async def list_partition(self, layout: str, key: str) -> List[ProjectedEntity]:
        """Projections stored under one partition key of a layout, ordered by entity id"""

    @abstractmethod
    async def tombstone_version(self, entity_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def purge_tombstone(self, entity_id: str):
        pass


def accepts_upsert(projection: ProjectedEntity, stored: Optional[ProjectedEntity], tombstone: Optional[int]) -> bool:
    if stored is not None and projection.version < stored.version:
        return False
    if tombstone is not None and projection.version <= tombstone:
        return False
    return True


def accepts_delete(version: int, stored: Optional[ProjectedEntity], tombstone: Optional[int]) -> bool:
    if stored is not None and stored.version > version:
        return False
    if stored is None and tombstone is not None and tombstone >= version:
        return False
    return True


def holds_version(stored: Optional[ProjectedEntity], tombstone: Optional[int], version: int) -> bool:
    """Whether the stored projection, or the tombstone when nothing is stored, is at `version`"""
    if stored is not None:
        return stored.version == version
    return tombstone == version


class MemoryReadStore(ReadStore):
    def __init__(self):
        self._entities: Dict[str, ProjectedEntity] = {}
        self._layouts: Dict[str, Dict[str, Set[str]]] = {}
        self._tombstones: Dict[str, int] = {}
        self._lock = threading.Lock()

    async def get(self, entity_id: str) -> Optional[ProjectedEntity]:
        return self._entities.get(entity_id)

    async def upsert(self, projection: ProjectedEntity, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        with self._lock:
            stored = self._entities.get(projection.entity_id)
            tombstone = self._tombstones.get(projection.entity_id)
            if force:
                if expected_version is not None and not holds_version(stored, tombstone, expected_version):
                    return False
            elif not accepts_upsert(projection, stored, tombstone):
                return False
            if stored is not None:
                self._unlink(stored)
            self._entities[projection.entity_id] = projection
            for layout, key in projection.partitions.items():
                self._layouts.setdefault(layout, {}).setdefault(key, set()).add(projection.entity_id)
            self._tombstones.pop(projection.entity_id, None)
            return True

    async def delete(self, entity_id: str, version: int, force: bool = False,
                     expected_version: Optional[int] = None) -> bool:
        with self._lock:
            stored = self._entities.get(entity_id)
            tombstone = self._tombstones.get(entity_id)
            if force:
                if expected_version is not None and not holds_version(stored, tombstone, expected_version):
                    return False
            elif not accepts_delete(version, stored, tombstone):
                return False
            if stored is not None:
                self._unlink(stored)
                del self._entities[entity_id]
            self._tombstones[entity_id] = version if force else max(version, tombstone or 0)
            return True

    def _unlink(self, projection: ProjectedEntity):
        for layout, key in projection.partitions.items():
            members = self._layouts.get(layout, {}).get(key)
            if members is not None:
                members.discard(projection.entity_id)
                if not members:
                    del self._layouts[layout][key]

    async def list_partition(self, layout: str, key: str) -> List[ProjectedEntity]:
        with self._lock:
            ids = sorted(self._layouts.get(layout, {}).get(key, ()))
            return [self._entities[i] for i in ids]

    async def tombstone_version(self, entity_id: str) -> Optional[int]:
        return self._tombstones.get(entity_id)

    async def purge_tombstone(self, entity_id: str):
        with self._lock:
            self._tombstones.pop(entity_id, None)

    def clear(self):
        with self._lock:
            self._entities.clear()
            self._layouts.clear()
            self._tombstones.clear()
