"""
In-process ledger, for tests and single-node deployments
"""
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from projection_engine.ledger.base import RecordPredicate, SyncLedger
from projection_engine.types.sync_record import SyncRecord


class MemoryLedger(SyncLedger):
    def __init__(self):
        self._records: Dict[str, SyncRecord] = {}
        self._lock = threading.Lock()

    async def get(self, entity_id: str) -> Optional[SyncRecord]:
        return self._records.get(entity_id)

    async def compare_and_set(self, entity_id: str, expected_revision: int, record: SyncRecord) -> bool:
        with self._lock:
            current = self._records.get(entity_id)
            current_revision = current.revision if current else 0
            if current_revision != expected_revision:
                return False
            self._records[entity_id] = replace(record, revision=expected_revision + 1)
            return True

    async def delete(self, entity_id: str, expected_revision: int) -> bool:
        with self._lock:
            current = self._records.get(entity_id)
            if current is None or current.revision != expected_revision:
                return False
            del self._records[entity_id]
            return True

    async def scan(self, predicate: RecordPredicate, limit: Optional[int] = None) -> List[SyncRecord]:
        with self._lock:
            snapshot = [self._records[k] for k in sorted(self._records)]
        matched = []
        for record in snapshot:
            if predicate(record):
                matched.append(record)
                if limit is not None and len(matched) >= limit:
                    break
        return matched

    def clear(self):
        with self._lock:
            self._records.clear()
