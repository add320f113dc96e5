"""
Tests for the DuckDB-backed write store and its change log.
"""
import pytest

from projection_engine.backends.duckdb_backend import DuckDBBackend, create_backend_from_uri
from projection_engine.backends.write_store import WriteStore
from projection_engine.errors import WriteStoreCommitFailure
from projection_engine.types.events import Command, EntityType, Operation


def session(entity_id="s-1", **payload):
    return Command(EntityType.SESSION, entity_id, payload={"account_id": "a-1", **payload})


def test_execute_assigns_increasing_versions(write_store):
    first = write_store.execute(session("s-1"))
    second = write_store.execute(session("s-2"))
    third = write_store.execute(session("s-1", title="renamed"))

    assert first.version < second.version < third.version
    assert write_store.latest_position() == third.version

    snapshot = write_store.fetch_entity("s-1")
    assert snapshot.version == third.version
    assert snapshot.payload == {"account_id": "a-1", "title": "renamed"}
    assert not snapshot.deleted


def test_fetch_unknown_entity(write_store):
    assert write_store.fetch_entity("nope") is None


def test_delete_leaves_deletion_marker(write_store):
    write_store.execute(session("s-1"))
    deleted = write_store.execute(Command(EntityType.SESSION, "s-1", operation=Operation.DELETE))

    assert deleted.payload == {"entity_id": "s-1"}
    snapshot = write_store.fetch_entity("s-1")
    assert snapshot.deleted
    assert snapshot.version == deleted.version


def test_recreate_after_delete(write_store):
    write_store.execute(session("s-1"))
    write_store.execute(Command(EntityType.SESSION, "s-1", operation=Operation.DELETE))
    again = write_store.execute(session("s-1", title="back"))

    snapshot = write_store.fetch_entity("s-1")
    assert not snapshot.deleted
    assert snapshot.version == again.version


def test_rejected_commands_leave_no_trace(write_store):
    write_store.execute(session("s-1"))
    position = write_store.latest_position()

    with pytest.raises(WriteStoreCommitFailure):
        write_store.execute(Command(EntityType.SESSION, "missing", operation=Operation.DELETE))

    with pytest.raises(WriteStoreCommitFailure):
        write_store.execute(Command(EntityType.HUMAN_TURN, "s-1", payload={"session_id": "s-9"}))

    assert write_store.latest_position() == position
    assert write_store.fetch_entity("s-1").entity_type is EntityType.SESSION


def test_changes_since_is_ordered_and_batched(write_store):
    commits = [write_store.execute(session(f"s-{i}")) for i in range(5)]

    batch = write_store.changes_since(0, limit=3)
    assert [e.version for e in batch] == [c.version for c in commits[:3]]
    assert all(e.operation is Operation.UPSERT for e in batch)

    rest = write_store.changes_since(batch[-1].version)
    assert [e.entity_id for e in rest] == ["s-3", "s-4"]
    assert rest[0].payload == {"account_id": "a-1"}


def test_entity_ids_include_deleted(write_store):
    write_store.execute(session("s-2"))
    write_store.execute(session("s-1"))
    write_store.execute(Command(EntityType.SESSION, "s-2", operation=Operation.DELETE))
    assert write_store.entity_ids() == ["s-1", "s-2"]


def test_persistent_store_survives_reopen(tmp_path):
    path = str(tmp_path / "write.duckdb")
    store = WriteStore(uri=f"duckdb:///{path}")
    commit = store.execute(session("s-1"))
    store.close()

    reopened = WriteStore(uri=path)
    assert reopened.fetch_entity("s-1").version == commit.version
    assert reopened.execute(session("s-2")).version > commit.version
    reopened.close()


def test_backend_transaction_rolls_back():
    backend = create_backend_from_uri(":memory:")
    backend.run("CREATE TABLE t (x INTEGER)")

    with pytest.raises(RuntimeError):
        with backend.transaction():
            backend.run("INSERT INTO t VALUES (1)")
            raise RuntimeError("boom")

    assert backend.scalar("SELECT count(*) FROM t") == 0
    backend.close()


def test_backend_rejects_nested_transactions():
    backend = DuckDBBackend()
    with backend.transaction():
        with pytest.raises(RuntimeError, match="Nested"):
            with backend.transaction():
                pass
    backend.close()
