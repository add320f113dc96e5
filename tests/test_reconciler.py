"""
Tests for the reconciler: selection, repair, tombstones and alerts.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from projection_engine.cdc.consumer import ChangeConsumer
from projection_engine.errors import TransientStoreError
from projection_engine.ledger.memory_ledger import MemoryLedger
from projection_engine.projection.projector import BY_SESSION, Projector
from projection_engine.reconcile.reconciler import Reconciler, ReconciliationWindow
from projection_engine.types.events import Command, EntityType, Operation
from projection_engine.types.results import EntityOutcome
from projection_engine.types.sync_record import DualWriteStatus, SyncRecord
from projection_engine.util.hashing import partition_for

NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


def turn(entity_id="h-1", text="hello"):
    return Command(EntityType.HUMAN_TURN, entity_id, payload={"session_id": "s-1", "text": text})


async def seed(write_store, ledger, read_store, *commands):
    """Commit commands and let CDC apply them"""
    consumer = ChangeConsumer(ledger, read_store)
    for command in commands:
        write_store.execute(command)
    for event in write_store.changes_since(0):
        await consumer.apply(event)


@pytest.mark.asyncio
async def test_failed_dual_write_with_divergent_projection_is_repaired(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn(text="v1"))
    latest = write_store.execute(turn(text="v2"))
    # Dual-write of v2 failed; CDC has not delivered it yet
    record = await ledger.get("h-1")
    await ledger.compare_and_set("h-1", record.revision, record.dual_write_started(latest.version).dual_write_failed())

    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow(sample_rate=0.0))

    assert report.selected == 1
    assert report.reconciled == 1
    assert report.outcomes["h-1"] is EntityOutcome.RECONCILED
    assert report.divergences[0].expected_version == latest.version

    projection = await read_store.get("h-1")
    expected = Projector().project_snapshot(write_store.fetch_entity("h-1"))
    assert projection.matches(expected)
    assert projection.document["text"] == "v2"

    settled = await ledger.get("h-1")
    assert settled.dual_write_status is DualWriteStatus.NONE
    assert settled.last_reconciled_at is not None
    assert settled.last_applied_version == latest.version


@pytest.mark.asyncio
async def test_consistent_entity_is_only_stamped(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn())

    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    assert report.consistent == 1
    assert report.reconciled == 0
    assert report.divergences == []
    assert (await ledger.get("h-1")).last_reconciled_at is not None


@pytest.mark.asyncio
async def test_missing_projection_is_recreated(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn())
    await read_store.delete("h-1", 1, force=True)
    await read_store.purge_tombstone("h-1")

    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    assert report.reconciled == 1
    assert report.divergences[0].reason == "missing"
    assert (await read_store.get("h-1")).document["text"] == "hello"


@pytest.mark.asyncio
async def test_phantom_newer_projection_is_overwritten(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn(text="real"))
    phantom = Projector().project(EntityType.HUMAN_TURN, "h-1", 999, {"session_id": "s-1", "text": "phantom"})
    await read_store.upsert(phantom)

    await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    projection = await read_store.get("h-1")
    assert projection.document["text"] == "real"
    assert projection.version == write_store.fetch_entity("h-1").version


@pytest.mark.asyncio
async def test_deleted_entity_is_tombstoned(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn())
    write_store.execute(Command(EntityType.HUMAN_TURN, "h-1", operation=Operation.DELETE))

    reconciler = Reconciler(write_store, ledger, read_store)
    report = await reconciler.reconcile(ReconciliationWindow.everything())

    assert report.tombstoned == 1
    assert await read_store.get("h-1") is None
    assert await read_store.list_partition(BY_SESSION, "s-1") == []
    assert (await ledger.get("h-1")).tombstoned_at is not None

    # Tombstoned records drop out of later sweeps
    assert (await reconciler.reconcile(ReconciliationWindow.everything())).selected == 0


@pytest.mark.asyncio
async def test_purge_tombstones_after_retention(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn())
    write_store.execute(Command(EntityType.HUMAN_TURN, "h-1", operation=Operation.DELETE))
    reconciler = Reconciler(write_store, ledger, read_store)
    await reconciler.reconcile(ReconciliationWindow.everything())

    assert await reconciler.purge_tombstones(timedelta(days=1)) == 0

    reconciler.clock = lambda: datetime.now(timezone.utc) + timedelta(days=2)
    assert await reconciler.purge_tombstones(timedelta(days=1)) == 1
    assert await ledger.get("h-1") is None
    assert await read_store.tombstone_version("h-1") is None


def test_window_selection():
    window = ReconciliationWindow(staleness=timedelta(hours=1), recent=timedelta(minutes=5), sample_rate=0.0)
    base = SyncRecord.new("e-1", EntityType.SESSION)
    fresh = replace(base, created_at=NOW - timedelta(minutes=30), updated_at=NOW - timedelta(minutes=30))

    assert not window.selects(fresh, NOW)
    assert window.selects(replace(fresh, dual_write_status=DualWriteStatus.FAILED), NOW)
    assert window.selects(replace(fresh, repair_pending=True), NOW)
    assert window.selects(replace(fresh, created_at=NOW - timedelta(hours=2)), NOW)
    assert not window.selects(replace(fresh, created_at=NOW - timedelta(hours=2),
                                      last_reconciled_at=NOW - timedelta(minutes=10)), NOW)
    assert not window.selects(replace(fresh, repair_pending=True, tombstoned_at=NOW), NOW)

    recent = replace(fresh, updated_at=NOW - timedelta(minutes=1))
    assert not window.selects(recent, NOW)
    assert replace(window, sample_rate=1.0).selects(recent, NOW)


def test_window_sharding():
    record = replace(SyncRecord.new("e-1", EntityType.SESSION), repair_pending=True)
    owner = partition_for("e-1", 3)
    assert ReconciliationWindow(shard_index=owner, shard_count=3).selects(record, NOW)
    assert not ReconciliationWindow(shard_index=(owner + 1) % 3, shard_count=3).selects(record, NOW)


@pytest.mark.asyncio
async def test_window_limit(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, *[turn(f"h-{i}") for i in range(5)])

    window = replace(ReconciliationWindow.everything(), limit=2)
    report = await Reconciler(write_store, ledger, read_store).reconcile(window)

    assert report.selected == 2
    assert sorted(report.outcomes) == ["h-0", "h-1"]


@pytest.mark.asyncio
async def test_repeated_failures_raise_alert(write_store, read_store):
    ledger = MemoryLedger()
    await seed(write_store, ledger, read_store, turn())
    broken = AsyncMock()
    broken.get.side_effect = TransientStoreError("read store down", store="read_store")
    reconciler = Reconciler(write_store, ledger, broken, alert_threshold=2)

    first = await reconciler.reconcile(ReconciliationWindow.everything())
    assert first.failed == 1
    assert first.alerts == []
    assert (await ledger.get("h-1")).repair_failures == 1

    second = await reconciler.reconcile(ReconciliationWindow.everything())
    assert second.alerts == ["h-1"]
    assert (await ledger.get("h-1")).repair_failures == 2

    # A successful sweep resets the counter
    reconciler.read_store = read_store
    await reconciler.reconcile(ReconciliationWindow.everything())
    assert (await ledger.get("h-1")).repair_failures == 0


@pytest.mark.asyncio
async def test_rebuild_restores_empty_read_store(write_store, ledger, read_store):
    write_store.execute(Command(EntityType.SESSION, "s-1", payload={"account_id": "a-1"}))
    write_store.execute(turn("h-1"))
    write_store.execute(turn("h-2"))
    write_store.execute(Command(EntityType.HUMAN_TURN, "h-2", operation=Operation.DELETE))

    report = await Reconciler(write_store, ledger, read_store).rebuild()

    assert report.selected == 3
    assert report.reconciled == 2
    assert report.tombstoned == 1
    assert [p.entity_id for p in await read_store.list_partition(BY_SESSION, "s-1")] == ["h-1", "s-1"]
    assert (await ledger.get("h-1")).last_applied_version == write_store.fetch_entity("h-1").version
    assert await ledger.count() == 3


@pytest.mark.asyncio
async def test_run_periodic_sweeps_until_stopped(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn())
    await read_store.delete("h-1", 1, force=True)
    await read_store.purge_tombstone("h-1")
    reconciler = Reconciler(write_store, ledger, read_store)

    task = asyncio.create_task(reconciler.run_periodic(0.01, ReconciliationWindow.everything()))
    for _ in range(100):
        if await read_store.get("h-1") is not None:
            break
        await asyncio.sleep(0.01)
    reconciler.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert await read_store.get("h-1") is not None


@pytest.mark.asyncio
async def test_cdc_application_before_projection_read_is_kept(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn(text="v1"))
    consumer = ChangeConsumer(ledger, read_store)
    original_get = read_store.get
    interleaved = []

    async def get_after_newer_commit(entity_id):
        if not interleaved:
            interleaved.append(write_store.execute(turn(text="v2")))
            for event in write_store.changes_since(0):
                await consumer.apply(event)
        return await original_get(entity_id)

    read_store.get = get_after_newer_commit
    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    latest = interleaved[0]
    assert report.outcomes["h-1"] is EntityOutcome.CONSISTENT
    projection = await original_get("h-1")
    assert projection.version == latest.version
    assert projection.document["text"] == "v2"
    assert (await ledger.get("h-1")).last_applied_version == latest.version


@pytest.mark.asyncio
async def test_repair_from_stale_snapshot_never_downgrades(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn(text="v1"))
    await read_store.delete("h-1", 1, force=True)
    await read_store.purge_tombstone("h-1")
    consumer = ChangeConsumer(ledger, read_store)
    original_upsert = read_store.upsert
    interleaved = []

    async def upsert_after_newer_commit(projection, force=False, expected_version=None):
        if not interleaved:
            # CDC lands v2 between the reconciler's snapshot and its write
            interleaved.append(write_store.execute(turn(text="v2")))
            for event in write_store.changes_since(0):
                await consumer.apply(event)
        return await original_upsert(projection, force=force, expected_version=expected_version)

    read_store.upsert = upsert_after_newer_commit
    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    latest = interleaved[0]
    assert report.outcomes["h-1"] is EntityOutcome.CONSISTENT
    projection = await read_store.get("h-1")
    assert projection.version == latest.version
    assert projection.document["text"] == "v2"
    assert (await ledger.get("h-1")).last_applied_version == latest.version


@pytest.mark.asyncio
async def test_phantom_tombstone_over_live_row_is_cleared(write_store, ledger, read_store):
    await seed(write_store, ledger, read_store, turn(text="live"))
    await read_store.delete("h-1", 999, force=True)

    report = await Reconciler(write_store, ledger, read_store).reconcile(ReconciliationWindow.everything())

    assert report.reconciled == 1
    assert (await read_store.get("h-1")).document["text"] == "live"
    assert await read_store.tombstone_version("h-1") is None
