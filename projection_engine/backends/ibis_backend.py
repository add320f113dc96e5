"""
IbisBackend - expression-based reads over the write store.

Features:
- Ibis expressions instead of hand-built SQL for every read path
- Arrow table output, converted to plain rows for callers
- Performance metrics
"""

from typing import Any, Dict, List, Optional
import logging
import time

import duckdb
import ibis
import pyarrow as pa
from ibis.common.exceptions import IbisError

from projection_engine.errors import TransientStoreError

logger = logging.getLogger(__name__)


class IbisBackend:
    """
    Read-side companion of DuckDBBackend sharing its connection, so reads
    observe every committed write without a second database handle.
    """

    def __init__(self, connection: Optional[Any] = None, duckdb_connection: Optional[Any] = None):
        """
        Initialize Ibis backend.

        Args:
            connection: An existing Ibis connection
            duckdb_connection: A raw DuckDB connection to wrap
        """
        if connection is not None:
            self.con = connection
        elif duckdb_connection is not None:
            self.con = ibis.duckdb.from_connection(duckdb_connection)
        else:
            self.con = ibis.duckdb.connect()

        self._query_count = 0
        self._total_time = 0.0

    def table(self, name: str):
        return self.con.table(name)

    def to_arrow(self, expr) -> pa.Table:
        start_time = time.time()
        try:
            return expr.to_pyarrow()
        except (duckdb.Error, IbisError) as e:
            raise TransientStoreError(f"Write store read failed: {e}", store="write_store") from e
        finally:
            self._query_count += 1
            self._total_time += (time.time() - start_time)

    def fetch(self, expr) -> List[Dict[str, Any]]:
        """Execute an expression and return its rows as dicts"""
        return self.to_arrow(expr).to_pylist()

    def get_stats(self) -> Dict[str, Any]:
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0

        return {
            "query_count": self._query_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "backend_type": getattr(self.con, 'name', 'unknown') if self.con else 'disconnected'
        }
