"""
ChangeConsumer - applies change events to the read store.

apply() is a single attempt:

    1. read the entity's SyncRecord (absent means nothing applied yet)
    2. skip if event.version <= last_applied_version
    3. write the projection (version-conditional, so idempotent)
    4. compare-and-set the ledger; on conflict re-read and go to 2

A crash between 3 and 4 leaves the projection ahead of the ledger, which a
redelivery repairs by re-running the same idempotent write.

process() wraps apply() with retry/backoff and dead-lettering, and is what the
delivery loop calls.
"""
import asyncio
import logging
import random
from typing import Dict, List, Optional

from projection_engine.cdc.dead_letter import DeadLetter, DeadLetterQueue, MemoryDeadLetterQueue
from projection_engine.errors import (
    LedgerConflictError,
    PermanentApplyFailure,
    StaleEventError,
    TransientStoreError,
)
from projection_engine.ledger.base import SyncLedger
from projection_engine.projection.projector import Projector
from projection_engine.projection.read_store import ReadStore
from projection_engine.types.events import ChangeEvent
from projection_engine.types.results import ApplyOutcome, ApplyResult
from projection_engine.types.sync_record import SyncRecord
from projection_engine.util.timeouts import bounded

logger = logging.getLogger(__name__)


class ChangeConsumer:
    def __init__(
        self,
        ledger: SyncLedger,
        read_store: ReadStore,
        projector: Optional[Projector] = None,
        dead_letters: Optional[DeadLetterQueue] = None,
        max_attempts: int = 5,
        retry_base_delay: float = 0.05,
        retry_max_delay: float = 2.0,
        store_timeout: Optional[float] = 1.0,
        cas_max_retries: int = 10,
    ):
        self.ledger = ledger
        self.read_store = read_store
        self.projector = projector or Projector()
        self.dead_letters = dead_letters or MemoryDeadLetterQueue()
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.store_timeout = store_timeout
        self.cas_max_retries = cas_max_retries
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self.stats = {"applied": 0, "skipped": 0, "retried": 0, "dead_lettered": 0}

    # ---- per-entity serialization -------------------------------------

    async def _acquire(self, entity_id: str) -> asyncio.Lock:
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        try:
            await lock.acquire()
        except asyncio.CancelledError:
            self._forget(entity_id)
            raise
        return lock

    def _release(self, entity_id: str, lock: asyncio.Lock):
        lock.release()
        self._forget(entity_id)

    def _forget(self, entity_id: str):
        self._lock_users[entity_id] -= 1
        if self._lock_users[entity_id] == 0:
            del self._lock_users[entity_id]
            del self._locks[entity_id]

    # ---- single attempt -----------------------------------------------

    async def apply(self, event: ChangeEvent) -> ApplyResult:
        """
        Apply one event once.

        Returns:
            ApplyResult with outcome APPLIED or SKIPPED

        Raises:
            TransientStoreError: the read store or ledger failed or timed out
        """
        lock = await self._acquire(event.entity_id)
        try:
            return await self._apply_locked(event)
        finally:
            self._release(event.entity_id, lock)

    async def _apply_locked(self, event: ChangeEvent) -> ApplyResult:
        for _ in range(self.cas_max_retries):
            record = await bounded(self.ledger.get(event.entity_id), self.store_timeout, "ledger")
            if record is None:
                record = SyncRecord.new(event.entity_id, event.entity_type)

            try:
                self._check_order(event, record)
            except StaleEventError as e:
                logger.debug("%s", e)
                self.stats["skipped"] += 1
                return ApplyResult(ApplyOutcome.SKIPPED, event.entity_id, event.version, reason="stale")

            await self._project(event)

            updated = record.applied(event.version)
            stored = await bounded(
                self.ledger.compare_and_set(event.entity_id, record.revision, updated),
                self.store_timeout, "ledger",
            )
            if stored:
                self.stats["applied"] += 1
                return ApplyResult(ApplyOutcome.APPLIED, event.entity_id, event.version)

            logger.debug("Ledger race on %s@%d, re-reading", event.entity_id, event.version)

        raise LedgerConflictError(event.entity_id, self.cas_max_retries)

    @staticmethod
    def _check_order(event: ChangeEvent, record: SyncRecord):
        if event.version <= record.last_applied_version:
            raise StaleEventError(event.entity_id, event.version, record.last_applied_version)

    async def _project(self, event: ChangeEvent):
        if event.is_delete:
            call = self.read_store.delete(event.entity_id, event.version)
        else:
            call = self.read_store.upsert(self.projector.project_event(event))
        await bounded(call, self.store_timeout, "read_store")

    # ---- retries and dead letters -------------------------------------

    def _backoff(self, attempt: int) -> float:
        delay = min(self.retry_max_delay, self.retry_base_delay * (2 ** (attempt - 1)))
        return delay * (0.5 + random.random() / 2)

    async def process(self, event: ChangeEvent) -> ApplyResult:
        """
        Apply with retries. After the retry budget the event is dead-lettered
        and DEAD_LETTERED is returned so the stream keeps moving.

        Raises:
            PermanentApplyFailure: neither the dead-letter queue nor the ledger
                could record the failure; the delivery must stay unacknowledged
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.apply(event)
                result.attempts = attempt
                return result
            except TransientStoreError as e:
                last_error = e
                if attempt < self.max_attempts:
                    self.stats["retried"] += 1
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Apply of %s@%d failed (attempt %d/%d), retrying in %.3fs: %s",
                        event.entity_id, event.version, attempt, self.max_attempts, delay, e,
                    )
                    await asyncio.sleep(delay)

        failure = PermanentApplyFailure(event.entity_id, event.version, self.max_attempts, last_error)
        await self._dead_letter(event, failure)
        return ApplyResult(
            ApplyOutcome.DEAD_LETTERED, event.entity_id, event.version,
            attempts=self.max_attempts, reason="retry budget exhausted", error=failure,
        )

    async def _dead_letter(self, event: ChangeEvent, failure: PermanentApplyFailure):
        self.stats["dead_lettered"] += 1
        logger.error("ALERT: dead-lettering %s@%d: %s", event.entity_id, event.version, failure)
        letter = DeadLetter(event=event, error=str(failure), attempts=failure.attempts)
        queued = True
        try:
            await bounded(self.dead_letters.put(letter), self.store_timeout, "dead_letter")
        except TransientStoreError as e:
            queued = False
            logger.error("Could not dead-letter %s@%d: %s", event.entity_id, event.version, e)
        try:
            await self._flag_for_repair(event)
        except TransientStoreError as e:
            if not queued:
                raise failure from e
            # The dead letter itself still records the entity for repair
            logger.error("Could not flag %s for repair: %s", event.entity_id, e)

    async def _flag_for_repair(self, event: ChangeEvent):
        for _ in range(self.cas_max_retries):
            record = await bounded(self.ledger.get(event.entity_id), self.store_timeout, "ledger")
            if record is None:
                record = SyncRecord.new(event.entity_id, event.entity_type)
            if record.repair_pending:
                return
            if await bounded(
                self.ledger.compare_and_set(event.entity_id, record.revision, record.repair_requested()),
                self.store_timeout, "ledger",
            ):
                return
        raise LedgerConflictError(event.entity_id, self.cas_max_retries)

    async def replay_dead_letters(self) -> List[ApplyResult]:
        """Drain the dead-letter queue and process every event again"""
        letters = await self.dead_letters.drain()
        results = []
        for letter in letters:
            results.append(await self.process(letter.event))
        if letters:
            logger.info("Replayed %d dead-lettered events", len(letters))
        return results
