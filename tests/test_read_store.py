"""
Tests for read store implementations.
"""
import pytest

from projection_engine.projection.projector import BY_ACCOUNT, BY_PARENT, BY_SESSION, Projector
from projection_engine.types.events import EntityType

projector = Projector()


def turn(version, session_id="s-1", text="hello"):
    return projector.project(EntityType.HUMAN_TURN, "h-1", version, {"session_id": session_id, "text": text})


@pytest.mark.asyncio
async def test_upsert_fans_out_to_layouts(read_store):
    session = projector.project(EntityType.SESSION, "s-1", 1, {"account_id": "a-1"})
    assert await read_store.upsert(session)
    assert await read_store.upsert(turn(2))

    assert (await read_store.get("s-1")).matches(session)
    assert [p.entity_id for p in await read_store.list_partition(BY_SESSION, "s-1")] == ["h-1", "s-1"]
    assert [p.entity_id for p in await read_store.list_partition(BY_PARENT, "s-1")] == ["h-1"]
    assert [p.entity_id for p in await read_store.list_partition(BY_ACCOUNT, "a-1")] == ["s-1"]
    assert await read_store.list_partition(BY_ACCOUNT, "nobody") == []


@pytest.mark.asyncio
async def test_upsert_is_version_conditional(read_store):
    assert await read_store.upsert(turn(5, text="new"))
    assert not await read_store.upsert(turn(4, text="old"))
    assert (await read_store.get("h-1")).document["text"] == "new"

    # Re-applying the same version is harmless
    assert await read_store.upsert(turn(5, text="new"))
    assert (await read_store.get("h-1")).version == 5


@pytest.mark.asyncio
async def test_update_moves_partitions(read_store):
    await read_store.upsert(turn(1, session_id="s-1"))
    await read_store.upsert(turn(2, session_id="s-2"))

    assert await read_store.list_partition(BY_SESSION, "s-1") == []
    assert [p.version for p in await read_store.list_partition(BY_SESSION, "s-2")] == [2]


@pytest.mark.asyncio
async def test_delete_leaves_tombstone(read_store):
    await read_store.upsert(turn(1))
    assert await read_store.delete("h-1", 3)

    assert await read_store.get("h-1") is None
    assert await read_store.list_partition(BY_SESSION, "s-1") == []
    assert await read_store.tombstone_version("h-1") == 3

    # No resurrection by a late or duplicate upsert
    assert not await read_store.upsert(turn(2))
    assert not await read_store.upsert(turn(3))
    assert await read_store.upsert(turn(4))
    assert await read_store.tombstone_version("h-1") is None


@pytest.mark.asyncio
async def test_delete_rejected_when_newer_projection_stored(read_store):
    await read_store.upsert(turn(5))
    assert not await read_store.delete("h-1", 4)
    assert (await read_store.get("h-1")).version == 5


@pytest.mark.asyncio
async def test_force_overrides_version_checks(read_store):
    await read_store.upsert(turn(9, text="phantom"))
    assert await read_store.upsert(turn(3, text="real"), force=True)
    assert (await read_store.get("h-1")).version == 3

    await read_store.delete("h-1", 10)
    assert await read_store.upsert(turn(4), force=True)
    assert (await read_store.get("h-1")).version == 4


@pytest.mark.asyncio
async def test_purge_tombstone(read_store):
    await read_store.upsert(turn(1))
    await read_store.delete("h-1", 2)
    await read_store.purge_tombstone("h-1")
    assert await read_store.tombstone_version("h-1") is None


@pytest.mark.asyncio
async def test_forced_write_with_expected_version_is_conditional(read_store):
    await read_store.upsert(turn(9, text="phantom"))
    assert not await read_store.upsert(turn(3, text="real"), force=True, expected_version=8)
    assert (await read_store.get("h-1")).version == 9
    assert await read_store.upsert(turn(3, text="real"), force=True, expected_version=9)
    assert (await read_store.get("h-1")).version == 3

    assert not await read_store.delete("h-1", 12, force=True, expected_version=9)
    assert await read_store.delete("h-1", 10, force=True, expected_version=3)
    # With nothing stored, the tombstone carries the version
    assert not await read_store.upsert(turn(4), force=True, expected_version=3)
    assert await read_store.upsert(turn(4), force=True, expected_version=10)
    assert (await read_store.get("h-1")).version == 4
