"""
DuckDBBackend - transactional execution for the write store.

Features:
- Parameterized statement execution (SQL injection safe)
- Explicit transactions with rollback on failure
- Performance metrics
"""

from typing import Any, List, Dict, Optional
import logging
import time
from contextlib import contextmanager

import duckdb

logger = logging.getLogger(__name__)


class DuckDBBackend:
    """
    DuckDB connection wrapper used by the write store.
    """

    def __init__(self, uri: str = ":memory:"):
        """
        Initialize DuckDB backend.

        Args:
            uri: Database path or ":memory:" for in-memory
        """
        self.uri = uri
        self.con = duckdb.connect(database=uri)

        self._in_transaction = False
        self._query_count = 0
        self._total_time = 0.0

    def run(self, sql: str, params: Optional[List[Any]] = None):
        """Execute a statement whose result is not needed"""
        start_time = time.time()
        try:
            self.con.execute(sql, params or [])
        finally:
            self._query_count += 1
            self._total_time += (time.time() - start_time)

    def scalar(self, sql: str, params: Optional[List[Any]] = None) -> Any:
        """Execute a query and return the first column of the first row"""
        row = self.con.execute(sql, params or []).fetchone()
        self._query_count += 1
        return row[0] if row else None

    @contextmanager
    def transaction(self):
        """
        Context manager for transactions.

        Example:
            >>> with backend.transaction():
            ...     backend.run("INSERT INTO ...")
            ...     backend.run("UPDATE ...")
        """
        if self._in_transaction:
            raise RuntimeError("Nested transactions are not supported")
        self.con.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            yield self
            self.con.execute("COMMIT")
        except Exception:
            self.con.execute("ROLLBACK")
            logger.debug("Transaction rolled back")
            raise
        finally:
            self._in_transaction = False

    def get_stats(self) -> Dict[str, Any]:
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0

        return {
            "query_count": self._query_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "uri": self.uri
        }

    def close(self):
        """Close database connection"""
        if self.con:
            self.con.close()
            self.con = None


def create_backend_from_uri(uri: str) -> DuckDBBackend:
    """
    Factory function to create backend from URI.

    Supports:
        - ":memory:" - in-memory database
        - "path/to/db.duckdb" - persistent file
        - "duckdb:///path/to/db.duckdb" - URI format
    """
    if uri.startswith("duckdb://"):
        uri = uri.replace("duckdb://", "")
        if uri.startswith("/"):
            uri = uri[1:]
        uri = uri or ":memory:"

    return DuckDBBackend(uri)
