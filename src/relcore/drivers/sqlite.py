"""
SQLite driver built on the standard library ``sqlite3`` module.
"""

import re
import sqlite3
import logging
import itertools
import threading
from typing import Any, Dict, Optional

from .base import Driver

logger = logging.getLogger(__name__)

_memory_ids = itertools.count(1)
_PRAGMA_TOKEN = re.compile(r'^[A-Za-z0-9_-]+$')


class SQLiteDriver(Driver):
    """
    Driver for SQLite databases.

    Sessions are opened with ``isolation_level=None`` so the connection stays in
    autocommit mode until ``begin`` issues an explicit ``BEGIN``.

    A ``:memory:`` database is mapped to a named shared-cache URI so every
    pooled connection sees the same data.
    """

    name = 'sqlite'
    supports_returning = False

    DEFAULT_PRAGMAS = {
        'foreign_keys': 'ON',
        'journal_mode': 'WAL',
        'synchronous': 'NORMAL',
    }

    def __init__(self, database: str, busy_timeout: float = 5.0,
                 pragmas: Optional[Dict[str, Any]] = None):
        super().__init__(database)
        self.busy_timeout = busy_timeout
        self.pragmas = dict(self.DEFAULT_PRAGMAS)
        if pragmas:
            self.pragmas.update(pragmas)
        for pragma, value in self.pragmas.items():
            if not _PRAGMA_TOKEN.match(pragma) or not _PRAGMA_TOKEN.match(str(value)):
                raise ValueError(f"Invalid pragma setting: {pragma}={value}")

        self._uri = False
        self._target = database
        self._keeper: Optional[sqlite3.Connection] = None
        self._keeper_lock = threading.Lock()
        if database in ('', ':memory:'):
            self._target = f"file:relcore_mem_{next(_memory_ids)}?mode=memory&cache=shared"
            self._uri = True
            self.pragmas.pop('journal_mode', None)

    def connect(self) -> sqlite3.Connection:
        if self._uri:
            with self._keeper_lock:
                if self._keeper is None:
                    # Shared in-memory databases vanish with their last connection
                    self._keeper = self._open()
        return self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._target,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=self._uri,
        )
        for pragma, value in self.pragmas.items():
            # Pragma names and values come from driver configuration, not callers
            conn.execute(f"PRAGMA {pragma}={value}")
        logger.debug(f"Opened SQLite session to {self.database}")
        return conn

    def begin(self, raw: sqlite3.Connection) -> None:
        raw.execute("BEGIN")

    def commit(self, raw: sqlite3.Connection) -> None:
        raw.execute("COMMIT")

    def rollback(self, raw: sqlite3.Connection) -> None:
        if raw.in_transaction:
            raw.execute("ROLLBACK")

    def dispose(self) -> None:
        with self._keeper_lock:
            if self._keeper is not None:
                self._keeper.close()
                self._keeper = None
