"""
Driver capability contract.

A driver is the only place that touches a concrete database module. The rest
of relcore sees raw sessions as opaque objects and talks to them through the
methods below.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence, Tuple


class StatementHandle:
    """
    Statement handle over a DB-API 2.0 cursor.

    Owned by the executor for one logical operation and closed exactly once.
    """

    def __init__(self, cursor: Any):
        self.cursor = cursor
        self.closed = False

    def execute(self, sql: str, params: Sequence[Any]) -> None:
        self.cursor.execute(sql, tuple(params))

    def fetchone(self) -> Optional[Tuple[Any, ...]]:
        return self.cursor.fetchone()

    @property
    def columns(self) -> Tuple[str, ...]:
        description = self.cursor.description
        if not description:
            return ()
        return tuple(col[0] for col in description)

    def affected_rows(self) -> int:
        """Rows changed by the last statement, -1 when unknown."""
        rowcount = getattr(self.cursor, 'rowcount', -1)
        return -1 if rowcount is None else rowcount

    def last_insert_id(self) -> Any:
        return getattr(self.cursor, 'lastrowid', None)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.cursor.close()


class Driver(ABC):
    """
    Abstract database driver.

    Attributes:
        name: Short backend name used in logs
        supports_returning: Whether generated keys come from ``INSERT ... RETURNING``
        database: Database location, used in logs
    """

    name = 'generic'
    supports_returning = False

    def __init__(self, database: str):
        self.database = database

    @abstractmethod
    def connect(self) -> Any:
        """Open a new raw session in autocommit mode."""

    def close(self, raw: Any) -> None:
        raw.close()

    def open_statement(self, raw: Any) -> StatementHandle:
        return StatementHandle(raw.cursor())

    @abstractmethod
    def begin(self, raw: Any) -> None:
        """Leave autocommit mode and start a transaction."""

    @abstractmethod
    def commit(self, raw: Any) -> None:
        """Commit and return to autocommit mode."""

    @abstractmethod
    def rollback(self, raw: Any) -> None:
        """Roll back and return to autocommit mode."""

    def interrupt(self, raw: Any) -> None:
        """Abort the statement running on ``raw``. Called from another thread."""
        interrupt = getattr(raw, 'interrupt', None)
        if interrupt is None:
            raise NotImplementedError(f"{self.name} driver cannot interrupt statements")
        interrupt()

    def dispose(self) -> None:
        """Release driver-wide resources once the pool is shut down."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(database={self.database!r})"
