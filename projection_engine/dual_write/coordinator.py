"""
DualWriteCoordinator - immediate read-side visibility for latency-critical commands.

The write-store commit always comes first and alone decides whether the
command succeeded. The projection that follows is best effort, bounded by a
short timeout, and its failure only ever shows up as `Failed` in the ledger.
"""
import asyncio
import logging
from typing import Optional

from projection_engine.errors import TransientStoreError
from projection_engine.ledger.base import SyncLedger
from projection_engine.projection.projector import Projector
from projection_engine.projection.read_store import ReadStore
from projection_engine.types.events import Command, Operation
from projection_engine.types.results import CommitResult, Committed, ProjectionOutcome
from projection_engine.types.sync_record import DualWriteStatus, SyncRecord
from projection_engine.util.timeouts import bounded

logger = logging.getLogger(__name__)


class DualWriteCoordinator:
    def __init__(
        self,
        write_store,
        ledger: SyncLedger,
        read_store: ReadStore,
        projector: Optional[Projector] = None,
        timeout: float = 0.25,
        store_timeout: Optional[float] = 1.0,
        cas_max_retries: int = 10,
    ):
        self.write_store = write_store
        self.ledger = ledger
        self.read_store = read_store
        self.projector = projector or Projector()
        self.timeout = timeout
        self.store_timeout = store_timeout
        self.cas_max_retries = cas_max_retries
        self.stats = {outcome.value: 0 for outcome in ProjectionOutcome}

    async def execute(self, command: Command) -> Committed:
        """
        Commit a command, then project it if it is latency-critical.

        Raises:
            WriteStoreCommitFailure: step 1 failed; nothing else was attempted
        """
        commit = self.write_store.execute(command)

        outcome = ProjectionOutcome.NOT_ATTEMPTED
        if command.latency_critical:
            outcome = await self._project_best_effort(commit)

        self.stats[outcome.value] += 1
        return Committed(
            entity_id=commit.entity_id,
            version=commit.version,
            committed_at=commit.committed_at,
            projection=outcome,
        )

    async def _project_best_effort(self, commit: CommitResult) -> ProjectionOutcome:
        started = False
        try:
            record = await bounded(self._begin(commit), self.timeout, "dual_write")
            if record is None:
                return ProjectionOutcome.DEFERRED
            started = True
            await bounded(self._project(commit), self.timeout, "dual_write")
            await bounded(self._finish(commit), self.timeout, "dual_write")
            return ProjectionOutcome.APPLIED
        except (TransientStoreError, asyncio.TimeoutError) as e:
            logger.warning("Dual-write projection of %s@%d failed: %s", commit.entity_id, commit.version, e)
            if started:
                await self._mark_failed(commit)
            return ProjectionOutcome.FAILED

    async def _begin(self, commit: CommitResult) -> Optional[SyncRecord]:
        """Move the entity to Pending for this version, or return None if there is nothing to do"""
        for _ in range(self.cas_max_retries):
            record = await bounded(self.ledger.get(commit.entity_id), self.store_timeout, "ledger")
            if record is None:
                record = SyncRecord.new(commit.entity_id, commit.entity_type)

            if record.last_applied_version >= commit.version:
                # CDC already delivered this commit or a newer one
                return None
            if record.dual_write_status is DualWriteStatus.FAILED:
                # Failed only clears through CDC or the reconciler
                return None
            if (record.dual_write_status is DualWriteStatus.PENDING
                    and (record.dual_write_version or 0) > commit.version):
                return None

            pending = record.dual_write_started(commit.version)
            if await bounded(
                self.ledger.compare_and_set(commit.entity_id, record.revision, pending),
                self.store_timeout, "ledger",
            ):
                return pending
        return None

    async def _project(self, commit: CommitResult):
        if commit.operation is Operation.DELETE:
            await bounded(self.read_store.delete(commit.entity_id, commit.version), self.store_timeout, "read_store")
        else:
            projection = self.projector.project_snapshot(commit)
            await bounded(self.read_store.upsert(projection), self.store_timeout, "read_store")

    async def _finish(self, commit: CommitResult):
        await self._transition(commit, lambda record: record.dual_write_applied(commit.version))

    async def _mark_failed(self, commit: CommitResult):
        try:
            await bounded(
                self._transition(commit, lambda record: record.dual_write_failed()),
                self.timeout, "dual_write",
            )
        except (TransientStoreError, asyncio.TimeoutError) as e:
            # Pending left behind is picked up by the reconciler's staleness sweep
            logger.error("Could not mark dual-write of %s@%d failed: %s", commit.entity_id, commit.version, e)

    async def _transition(self, commit: CommitResult, change):
        """Apply `change` only while this dual-write still owns the Pending slot"""
        for _ in range(self.cas_max_retries):
            record = await bounded(self.ledger.get(commit.entity_id), self.store_timeout, "ledger")
            if (record is None
                    or record.dual_write_status is not DualWriteStatus.PENDING
                    or record.dual_write_version != commit.version):
                # Superseded by CDC, the reconciler, or a newer dual-write
                return
            if await bounded(
                self.ledger.compare_and_set(commit.entity_id, record.revision, change(record)),
                self.store_timeout, "ledger",
            ):
                return
