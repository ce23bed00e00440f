"""
DuckDB driver.

DuckDB opens one database instance per process and hands out sessions as
duplicates of a root connection (``DuckDBPyConnection.cursor()``). Each pooled
connection is such a duplicate, which keeps ``:memory:`` databases shared across
the pool.
"""

import os
import threading
import logging
from typing import Any, Dict, Optional, Sequence

import duckdb

from .base import Driver, StatementHandle

logger = logging.getLogger(__name__)


class DuckDBStatementHandle(StatementHandle):
    """
    Statement handle over a DuckDB session.

    DuckDB cursors are independent sessions with their own transaction state,
    so statements run on the session itself and closing the handle leaves the
    session open.
    """

    def execute(self, sql: str, params: Sequence[Any]) -> None:
        self.cursor.execute(sql, list(params))

    def affected_rows(self) -> int:
        # DML reports its row count as a single "Count" column
        description = self.cursor.description
        if not description or description[0][0] != 'Count':
            return -1
        row = self.cursor.fetchone()
        return int(row[0]) if row else 0

    def last_insert_id(self) -> Any:
        return None

    def close(self) -> None:
        self.closed = True


class DuckDBDriver(Driver):
    """
    Driver for DuckDB databases.

    Args:
        database: File path or ``:memory:``
        memory_limit: DuckDB memory limit, e.g. ``'4GB'``
        threads: Worker threads, ``'auto'`` for the CPU count
        read_only: Open the database read-only
    """

    name = 'duckdb'
    supports_returning = True

    def __init__(self, database: str = ':memory:', memory_limit: Optional[str] = None,
                 threads: Any = 'auto', read_only: bool = False,
                 config: Optional[Dict[str, Any]] = None):
        super().__init__(database or ':memory:')
        self.read_only = read_only
        self.config: Dict[str, Any] = dict(config or {})
        if memory_limit:
            self.config.setdefault('memory_limit', memory_limit)
        if threads == 'auto':
            threads = max(1, os.cpu_count() or 1)
        if threads:
            self.config.setdefault('threads', int(threads))

        self._root: Optional[duckdb.DuckDBPyConnection] = None
        self._root_lock = threading.Lock()

    def _root_connection(self) -> duckdb.DuckDBPyConnection:
        with self._root_lock:
            if self._root is None:
                self._root = duckdb.connect(
                    database=self.database,
                    read_only=self.read_only,
                    config=self.config,
                )
                logger.info(f"Opened DuckDB database {self.database}")
            return self._root

    def connect(self) -> duckdb.DuckDBPyConnection:
        return self._root_connection().cursor()

    def open_statement(self, raw: duckdb.DuckDBPyConnection) -> DuckDBStatementHandle:
        return DuckDBStatementHandle(raw)

    def begin(self, raw: duckdb.DuckDBPyConnection) -> None:
        raw.begin()

    def commit(self, raw: duckdb.DuckDBPyConnection) -> None:
        raw.commit()

    def rollback(self, raw: duckdb.DuckDBPyConnection) -> None:
        raw.rollback()

    def interrupt(self, raw: duckdb.DuckDBPyConnection) -> None:
        raw.interrupt()

    def dispose(self) -> None:
        with self._root_lock:
            if self._root is not None:
                self._root.close()
                self._root = None
                logger.info(f"Closed DuckDB database {self.database}")
