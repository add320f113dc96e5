"""
WriteStore - the authoritative relational store.

Commands run inside a DuckDB transaction that also appends an outbox row to
`change_log`. The outbox doubles as the CDC source: its `lsn` column is drawn
from a sequence inside the same transaction, so the commit version handed back
to the caller is exactly the version the change feed later delivers.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import duckdb
import ibis

from projection_engine.backends.duckdb_backend import DuckDBBackend, create_backend_from_uri
from projection_engine.backends.ibis_backend import IbisBackend
from projection_engine.errors import WriteStoreCommitFailure
from projection_engine.types.events import (
    ChangeEvent,
    Command,
    EntityType,
    Operation,
    canonical_payload,
)
from projection_engine.types.results import CommitResult

logger = logging.getLogger(__name__)


SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS commit_lsn START 1",
    """
    CREATE TABLE IF NOT EXISTS entities (
        entity_id VARCHAR NOT NULL,
        entity_type VARCHAR NOT NULL,
        version BIGINT NOT NULL,
        payload VARCHAR NOT NULL,
        updated_at DOUBLE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS change_log (
        lsn BIGINT NOT NULL,
        entity_type VARCHAR NOT NULL,
        entity_id VARCHAR NOT NULL,
        operation VARCHAR NOT NULL,
        payload VARCHAR NOT NULL,
        committed_at DOUBLE NOT NULL
    )
    """,
]


@dataclass
class EntitySnapshot:
    """Authoritative state of one entity as read from the write store"""
    entity_type: EntityType
    entity_id: str
    version: int
    payload: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False


class WriteStore:
    def __init__(self, backend: Optional[DuckDBBackend] = None, uri: str = ":memory:"):
        self.backend = backend or create_backend_from_uri(uri)
        for statement in SCHEMA:
            self.backend.run(statement)
        self.reader = IbisBackend(duckdb_connection=self.backend.con)

    # ---- commands ----------------------------------------------------

    def execute(self, command: Command) -> CommitResult:
        """
        Run a command in a single transaction and return the commit.

        Raises:
            WriteStoreCommitFailure: the transaction was rejected or rolled back
        """
        entity_id = command.entity_id
        committed_at = time.time()

        try:
            with self.backend.transaction():
                version = int(self.backend.scalar("SELECT nextval('commit_lsn')"))
                existing_type = self.backend.scalar(
                    "SELECT entity_type FROM entities WHERE entity_id = ?", [entity_id]
                )

                if existing_type is not None and existing_type != command.entity_type.value:
                    raise WriteStoreCommitFailure(
                        f"{entity_id} is a {existing_type}, not a {command.entity_type.value}"
                    )

                if command.operation is Operation.DELETE:
                    if existing_type is None:
                        raise WriteStoreCommitFailure(f"Cannot delete {entity_id}: no such entity")
                    payload = {"entity_id": entity_id}
                    self.backend.run("DELETE FROM entities WHERE entity_id = ?", [entity_id])
                else:
                    payload = canonical_payload(command.payload)
                    encoded = json.dumps(payload, sort_keys=True)
                    if existing_type is None:
                        self.backend.run(
                            "INSERT INTO entities VALUES (?, ?, ?, ?, ?)",
                            [entity_id, command.entity_type.value, version, encoded, committed_at],
                        )
                    else:
                        self.backend.run(
                            "UPDATE entities SET version = ?, payload = ?, updated_at = ? WHERE entity_id = ?",
                            [version, encoded, committed_at, entity_id],
                        )

                self.backend.run(
                    "INSERT INTO change_log VALUES (?, ?, ?, ?, ?, ?)",
                    [
                        version,
                        command.entity_type.value,
                        entity_id,
                        command.operation.value,
                        json.dumps(payload, sort_keys=True),
                        committed_at,
                    ],
                )
        except WriteStoreCommitFailure:
            raise
        except duckdb.Error as e:
            raise WriteStoreCommitFailure(f"Commit of {entity_id} failed: {e}") from e

        logger.debug("Committed %s %s@%d", command.operation.value, entity_id, version)
        return CommitResult(
            entity_type=command.entity_type,
            entity_id=entity_id,
            version=version,
            operation=command.operation,
            payload=payload,
            committed_at=datetime.fromtimestamp(committed_at, tz=timezone.utc),
        )

    # ---- reads -------------------------------------------------------

    def fetch_entity(self, entity_id: str) -> Optional[EntitySnapshot]:
        """Current authoritative state, a deletion marker, or None if never seen"""
        entities = self.reader.table("entities")
        rows = self.reader.fetch(entities.filter(entities.entity_id == entity_id))
        if rows:
            row = rows[0]
            return EntitySnapshot(
                entity_type=EntityType(row["entity_type"]),
                entity_id=entity_id,
                version=int(row["version"]),
                payload=json.loads(row["payload"]),
            )

        log = self.reader.table("change_log")
        expr = log.filter(log.entity_id == entity_id).order_by(ibis.desc("lsn")).limit(1)
        rows = self.reader.fetch(expr)
        if rows and rows[0]["operation"] == Operation.DELETE.value:
            return EntitySnapshot(
                entity_type=EntityType(rows[0]["entity_type"]),
                entity_id=entity_id,
                version=int(rows[0]["lsn"]),
                payload={"entity_id": entity_id},
                deleted=True,
            )
        return None

    def changes_since(self, after_lsn: int, limit: int = 100) -> List[ChangeEvent]:
        """Change events with lsn > after_lsn, in commit order"""
        log = self.reader.table("change_log")
        expr = log.filter(log.lsn > after_lsn).order_by(log.lsn).limit(limit)
        return [ChangeEvent.from_log_row(row) for row in self.reader.fetch(expr)]

    def entity_ids(self) -> List[str]:
        """Every entity id the write store has ever committed, deleted ones included"""
        log = self.reader.table("change_log")
        expr = log.select("entity_id").distinct().order_by("entity_id")
        return [row["entity_id"] for row in self.reader.fetch(expr)]

    def latest_position(self) -> int:
        return int(self.backend.scalar("SELECT coalesce(max(lsn), 0) FROM change_log"))

    def get_stats(self) -> Dict[str, Any]:
        return {"writes": self.backend.get_stats(), "reads": self.reader.get_stats()}

    def close(self):
        self.backend.close()
