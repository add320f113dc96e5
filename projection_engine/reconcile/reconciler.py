"""
Reconciler - background sweep that re-derives projections from the write store.

The write store always wins. Projections are compared against what the write
store says right now and overwritten on mismatch; the version-conditional
read-store write keeps a slow sweep from clobbering a newer CDC application.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from projection_engine.errors import (
    LedgerConflictError,
    ProjectionDivergenceError,
    TransientStoreError,
)
from projection_engine.ledger.base import SyncLedger
from projection_engine.projection.projector import Projector
from projection_engine.projection.read_store import ReadStore
from projection_engine.types.results import EntityOutcome, ReconciliationReport
from projection_engine.types.sync_record import DualWriteStatus, SyncRecord
from projection_engine.util.hashing import in_sample, partition_for
from projection_engine.util.timeouts import bounded

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationWindow:
    """Which ledger records a sweep looks at"""
    staleness: timedelta = timedelta(hours=1)
    recent: timedelta = timedelta(minutes=5)
    sample_rate: float = 0.1
    limit: Optional[int] = 1000
    shard_index: int = 0
    shard_count: int = 1

    def selects(self, record: SyncRecord, now: datetime) -> bool:
        if self.shard_count > 1 and partition_for(record.entity_id, self.shard_count) != self.shard_index:
            return False
        if record.tombstoned_at is not None:
            return False
        if record.dual_write_status is DualWriteStatus.FAILED or record.repair_pending:
            return True
        reference = record.last_reconciled_at or record.created_at
        if reference < now - self.staleness:
            return True
        if record.updated_at >= now - self.recent:
            return in_sample(record.entity_id, self.sample_rate)
        return False

    @staticmethod
    def everything() -> "ReconciliationWindow":
        return ReconciliationWindow(staleness=timedelta(0), sample_rate=1.0, limit=None)


class Reconciler:
    def __init__(
        self,
        write_store,
        ledger: SyncLedger,
        read_store: ReadStore,
        projector: Optional[Projector] = None,
        concurrency: int = 8,
        alert_threshold: int = 3,
        store_timeout: Optional[float] = 1.0,
        cas_max_retries: int = 10,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.write_store = write_store
        self.ledger = ledger
        self.read_store = read_store
        self.projector = projector or Projector()
        self.concurrency = concurrency
        self.alert_threshold = alert_threshold
        self.store_timeout = store_timeout
        self.cas_max_retries = cas_max_retries
        self.clock = clock
        self.running = False

    async def reconcile(self, window: Optional[ReconciliationWindow] = None) -> ReconciliationReport:
        """Sweep the ledger records selected by `window` and repair divergence"""
        window = window or ReconciliationWindow()
        now = self.clock()
        report = ReconciliationReport(started_at=now)

        records = await bounded(
            self.ledger.scan(lambda record: window.selects(record, now), limit=window.limit),
            self.store_timeout, "ledger",
        )
        await self._sweep([r.entity_id for r in records], report)
        return report

    async def rebuild(self, entity_ids: Optional[Iterable[str]] = None) -> ReconciliationReport:
        """Re-derive projections straight from the write store, ledger or not"""
        ids = list(entity_ids) if entity_ids is not None else self.write_store.entity_ids()
        report = ReconciliationReport(started_at=self.clock())
        await self._sweep(ids, report)
        return report

    async def _sweep(self, entity_ids: List[str], report: ReconciliationReport):
        report.selected = len(entity_ids)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def one(entity_id: str):
            async with semaphore:
                await self._reconcile_one(entity_id, report)

        await asyncio.gather(*[one(entity_id) for entity_id in entity_ids])
        report.finished_at = self.clock()

        if report.reconciled or report.failed or report.tombstoned:
            logger.info(
                "Reconciliation: %d selected, %d reconciled, %d consistent, %d tombstoned, %d failed",
                report.selected, report.reconciled, report.consistent, report.tombstoned, report.failed,
            )

    async def _reconcile_one(self, entity_id: str, report: ReconciliationReport):
        try:
            outcome = await self._repair(entity_id, report)
        except TransientStoreError as e:
            report.record(entity_id, EntityOutcome.FAILED)
            logger.warning("Could not reconcile %s: %s", entity_id, e)
            await self._note_failure(entity_id, report)
            return
        report.record(entity_id, outcome)

    async def _repair(self, entity_id: str, report: ReconciliationReport) -> EntityOutcome:
        # Read the projection before the source: anything CDC has applied by now
        # is then no newer than the snapshot, so a higher stored version is a phantom.
        current = await bounded(self.read_store.get(entity_id), self.store_timeout, "read_store")
        snapshot = self.write_store.fetch_entity(entity_id)

        if snapshot is None or snapshot.deleted:
            source_version = snapshot.version if snapshot else 0
            if current is not None:
                report.divergences.append(ProjectionDivergenceError(
                    entity_id, None, current.version, "present in read store but deleted at source",
                ))
                deleted = await bounded(
                    self.read_store.delete(
                        entity_id, max(source_version, current.version),
                        force=True, expected_version=current.version,
                    ),
                    self.store_timeout, "read_store",
                )
                if not deleted:
                    return self._superseded(entity_id, source_version)
            await self._settle(entity_id, snapshot, source_version, tombstoned=True)
            return EntityOutcome.TOMBSTONED

        expected = self.projector.project_snapshot(snapshot)
        outcome = EntityOutcome.CONSISTENT
        if not expected.matches(current):
            divergence = ProjectionDivergenceError(
                entity_id, expected.version, current.version if current else None,
                "missing" if current is None else "content mismatch",
            )
            report.divergences.append(divergence)
            logger.warning("%s", divergence)
            if not await self._overwrite(expected, current):
                return self._superseded(entity_id, expected.version)
            outcome = EntityOutcome.RECONCILED

        await self._settle(entity_id, snapshot, snapshot.version, tombstoned=False)
        return outcome

    async def _overwrite(self, expected, current) -> bool:
        """Write `expected` over a diverged projection; False if a newer application got there first"""
        entity_id = expected.entity_id
        if current is not None and current.version > expected.version:
            # Forced, but only over the exact phantom version we observed
            return await bounded(
                self.read_store.upsert(expected, force=True, expected_version=current.version),
                self.store_timeout, "read_store",
            )
        if await bounded(self.read_store.upsert(expected), self.store_timeout, "read_store"):
            return True

        tombstone = await bounded(self.read_store.tombstone_version(entity_id), self.store_timeout, "read_store")
        if tombstone is None:
            return False
        fresh = self.write_store.fetch_entity(entity_id)
        if fresh is None or fresh.deleted or fresh.version != expected.version:
            return False
        # The source row is still live at the version we projected, so the tombstone is a phantom
        return await bounded(
            self.read_store.upsert(expected, force=True, expected_version=tombstone),
            self.store_timeout, "read_store",
        )

    @staticmethod
    def _superseded(entity_id: str, version: int) -> EntityOutcome:
        logger.debug("Repair of %s at %d superseded by a newer application", entity_id, version)
        return EntityOutcome.CONSISTENT

    async def _settle(self, entity_id: str, snapshot, source_version: int, tombstoned: bool):
        for _ in range(self.cas_max_retries):
            record = await bounded(self.ledger.get(entity_id), self.store_timeout, "ledger")
            if record is None:
                if snapshot is None:
                    return
                record = SyncRecord.new(entity_id, snapshot.entity_type)
            if await bounded(
                self.ledger.compare_and_set(entity_id, record.revision, record.reconciled(source_version, tombstoned)),
                self.store_timeout, "ledger",
            ):
                return
        raise LedgerConflictError(entity_id, self.cas_max_retries)

    async def _note_failure(self, entity_id: str, report: ReconciliationReport):
        try:
            for _ in range(self.cas_max_retries):
                record = await bounded(self.ledger.get(entity_id), self.store_timeout, "ledger")
                if record is None:
                    return
                failed = record.repair_failed()
                if await bounded(
                    self.ledger.compare_and_set(entity_id, record.revision, failed),
                    self.store_timeout, "ledger",
                ):
                    if failed.repair_failures >= self.alert_threshold:
                        report.alerts.append(entity_id)
                        logger.critical(
                            "ALERT: %s failed reconciliation %d times in a row",
                            entity_id, failed.repair_failures,
                        )
                    return
        except TransientStoreError as e:
            logger.error("Could not record reconciliation failure for %s: %s", entity_id, e)

    async def purge_tombstones(self, retention: timedelta) -> int:
        """Drop ledger records (and read-store tombstones) deleted longer than `retention` ago"""
        cutoff = self.clock() - retention
        records = await bounded(
            self.ledger.scan(lambda r: r.tombstoned_at is not None and r.tombstoned_at < cutoff),
            self.store_timeout, "ledger",
        )
        purged = 0
        for record in records:
            if await bounded(self.ledger.delete(record.entity_id, record.revision), self.store_timeout, "ledger"):
                await bounded(self.read_store.purge_tombstone(record.entity_id), self.store_timeout, "read_store")
                purged += 1
        if purged:
            logger.info("Purged %d tombstoned entities", purged)
        return purged

    async def run_periodic(self, interval: float, window: Optional[ReconciliationWindow] = None,
                           tombstone_retention: Optional[timedelta] = None):
        """Sweep every `interval` seconds until stop() is called"""
        self.running = True
        while self.running:
            try:
                await self.reconcile(window)
                if tombstone_retention is not None:
                    await self.purge_tombstones(tombstone_retention)
            except TransientStoreError as e:
                logger.error("Reconciliation sweep aborted: %s", e)
            await asyncio.sleep(interval)

    def stop(self):
        self.running = False
