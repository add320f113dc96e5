"""
Tests for ledger implementations.
"""
import pytest

from projection_engine.types.events import EntityType
from projection_engine.types.sync_record import DualWriteStatus, SyncRecord


@pytest.mark.asyncio
async def test_get_missing_record(ledger):
    assert await ledger.get("missing") is None


@pytest.mark.asyncio
async def test_compare_and_set_creates_and_bumps_revision(ledger):
    record = SyncRecord.new("s-1", EntityType.SESSION).applied(1)
    assert await ledger.compare_and_set("s-1", 0, record)

    stored = await ledger.get("s-1")
    assert stored.revision == 1
    assert stored.last_applied_version == 1

    assert await ledger.compare_and_set("s-1", 1, stored.applied(2))
    stored = await ledger.get("s-1")
    assert stored.revision == 2
    assert stored.last_applied_version == 2


@pytest.mark.asyncio
async def test_compare_and_set_rejects_stale_revision(ledger):
    record = SyncRecord.new("s-1", EntityType.SESSION)
    assert await ledger.compare_and_set("s-1", 0, record.applied(1))

    # A second writer that also read "absent" loses
    assert not await ledger.compare_and_set("s-1", 0, record.dual_write_started(1))
    stored = await ledger.get("s-1")
    assert stored.dual_write_status is DualWriteStatus.NONE
    assert stored.last_applied_version == 1


@pytest.mark.asyncio
async def test_delete_is_conditional(ledger):
    await ledger.compare_and_set("s-1", 0, SyncRecord.new("s-1", EntityType.SESSION))
    assert not await ledger.delete("s-1", 5)
    assert await ledger.delete("s-1", 1)
    assert await ledger.get("s-1") is None
    assert not await ledger.delete("s-1", 1)


@pytest.mark.asyncio
async def test_scan_filters_orders_and_limits(ledger):
    for i in (3, 1, 2, 4):
        record = SyncRecord.new(f"e-{i}", EntityType.HUMAN_TURN).applied(i)
        await ledger.compare_and_set(f"e-{i}", 0, record)

    even = await ledger.scan(lambda r: r.last_applied_version % 2 == 0)
    assert [r.entity_id for r in even] == ["e-2", "e-4"]

    first_two = await ledger.scan(lambda r: True, limit=2)
    assert [r.entity_id for r in first_two] == ["e-1", "e-2"]

    assert await ledger.count() == 4
