"""
Synchronization Ledger interface.

Every mutation is a compare-and-set on the record revision observed by the
caller; there are no blind overwrites.
"""
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from projection_engine.types.sync_record import SyncRecord

RecordPredicate = Callable[[SyncRecord], bool]


class SyncLedger(ABC):
    @abstractmethod
    async def get(self, entity_id: str) -> Optional[SyncRecord]:
        """Return the stored record, or None if the entity was never seen"""

    @abstractmethod
    async def compare_and_set(self, entity_id: str, expected_revision: int, record: SyncRecord) -> bool:
        """
        Store `record` only if the stored revision equals `expected_revision`
        (0 meaning "no record yet"). The stored copy gets revision
        expected_revision + 1. Returns False when another writer got there first.
        """

    @abstractmethod
    async def delete(self, entity_id: str, expected_revision: int) -> bool:
        """Remove a record if it is still at `expected_revision`"""

    @abstractmethod
    async def scan(self, predicate: RecordPredicate, limit: Optional[int] = None) -> List[SyncRecord]:
        """Records matching `predicate`, ordered by entity id"""

    async def count(self) -> int:
        return len(await self.scan(lambda record: True))
