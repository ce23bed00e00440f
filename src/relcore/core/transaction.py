"""
Transaction management.

A Transaction is an explicit object bound to one connection for its whole
lifetime. ``begin`` takes the session out of autocommit mode; ``commit`` and
``rollback`` are terminal and put it back. A transaction rolled back because
a statement failed stays bound to its connection, so later statements on that
connection are refused instead of silently running in autocommit mode.
"""

import time
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional

from .classifier import ErrorClassifier
from .errors import DatabaseError, TransactionAlreadyActive, TransactionAlreadyClosed
from .pool import Connection
from ..config.logging_config import DatabaseLoggerAdapter, get_db_logger


class TransactionState(str, Enum):
    """Transaction lifecycle state."""
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """
    One transaction on one connection.

    Created by ``TransactionManager.begin``; not meant to be constructed directly.
    """

    def __init__(self, connection: Connection, classifier: ErrorClassifier,
                 logger: DatabaseLoggerAdapter):
        self.connection = connection
        self.classifier = classifier
        self.logger = logger
        self.state = TransactionState.ACTIVE
        self.started_at = time.monotonic()
        self.rollback_reason: Optional[str] = None
        self.aborted = False
        self.scoped = False

    @property
    def active(self) -> bool:
        return self.state == TransactionState.ACTIVE

    def _ensure_active(self, operation: str) -> None:
        if not self.active:
            raise TransactionAlreadyClosed(
                f"Cannot {operation}: transaction on connection #{self.connection.id} "
                f"is already {self.state.value}"
            )

    def _finish(self, state: TransactionState, detach: bool = True) -> None:
        self.state = state
        if not detach:
            self.aborted = True
        elif not self.scoped:
            self.detach()

    def detach(self) -> None:
        """Unbind the ended transaction from its connection."""
        if self.connection.transaction is self:
            self.connection.transaction = None

    def commit(self) -> None:
        """
        Commit every statement since ``begin`` as one unit.

        A failed commit rolls back and raises the classified error.

        Raises:
            TransactionAlreadyClosed: The transaction already ended
        """
        self._ensure_active('commit')
        driver = self.connection.driver
        try:
            driver.commit(self.connection.raw)
        except Exception as e:
            error = self.classifier.wrap(e)
            self.rollback_quietly(f"commit failed: {error.message}")
            if self.active:
                self._finish(TransactionState.ROLLED_BACK, detach=False)
            if error.kind.breaks_connection:
                self.connection.mark_broken(f"commit failed: {error.message}")
            raise error

        self._finish(TransactionState.COMMITTED)
        self.logger.transaction('commit', True, time.monotonic() - self.started_at)

    def rollback(self) -> None:
        """
        Undo every statement since ``begin``.

        If the driver cannot roll back, the connection is marked broken so the
        pool discards the session and the error is raised.

        Raises:
            TransactionAlreadyClosed: The transaction already ended
        """
        self._rollback(detach=True)

    def _rollback(self, detach: bool) -> None:
        self._ensure_active('rollback')
        driver = self.connection.driver
        try:
            driver.rollback(self.connection.raw)
        except Exception as e:
            error = self.classifier.wrap(e)
            self.connection.mark_broken(f"rollback failed: {error.message}")
            self._finish(TransactionState.ROLLED_BACK, detach)
            self.logger.transaction('rollback', False, error=error.message)
            raise error

        self._finish(TransactionState.ROLLED_BACK, detach)
        self.logger.transaction(
            'rollback', False, time.monotonic() - self.started_at, self.rollback_reason
        )

    def rollback_quietly(self, reason: str) -> None:
        """
        Roll back on an error path without masking the error in flight.

        The transaction stays bound to its connection as aborted. A failed
        rollback is logged and leaves the connection broken.
        """
        if not self.active:
            return
        self.rollback_reason = reason
        try:
            self._rollback(detach=False)
        except DatabaseError as e:
            self.logger.error(f"Rollback failed on connection #{self.connection.id}: {e}")

    def __repr__(self) -> str:
        return f"Transaction(connection={self.connection.id}, state={self.state.value})"


class TransactionManager:
    """
    Begins transactions and scopes them.

    Usage:
        with manager.scope(conn) as tx:
            executor.execute(conn, "UPDATE ...", (...))
            tx.commit()          # without this the scope rolls back
    """

    def __init__(self, classifier: Optional[ErrorClassifier] = None,
                 logger: Optional[DatabaseLoggerAdapter] = None):
        self.classifier = classifier or ErrorClassifier()
        self.logger = logger or get_db_logger('transaction')

    def begin(self, connection: Connection) -> Transaction:
        """
        Start a transaction on ``connection``.

        An aborted transaction still bound to the connection is replaced.

        Raises:
            TransactionAlreadyActive: The connection already has an active transaction
        """
        if connection.in_transaction:
            raise TransactionAlreadyActive(
                f"Connection #{connection.id} already has an active transaction"
            )

        try:
            connection.driver.begin(connection.raw)
        except Exception as e:
            error = self.classifier.wrap(e)
            if error.kind.breaks_connection:
                connection.mark_broken(f"begin failed: {error.message}")
            raise error

        transaction = Transaction(connection, self.classifier, self.logger)
        connection.transaction = transaction
        self.logger.debug(f"Transaction started on connection #{connection.id}")
        return transaction

    @contextmanager
    def scope(self, connection: Connection, commit_on_exit: bool = False) -> Iterator[Transaction]:
        """
        Run a block inside a transaction.

        On error the transaction is rolled back and the error re-raised. On
        normal exit it is committed when ``commit_on_exit`` is set, otherwise
        rolled back unless the block already committed it. The transaction
        stays bound to the connection until the block ends.

        Raises:
            TransactionAlreadyClosed: ``commit_on_exit`` is set and a failed
                statement already rolled the transaction back
        """
        transaction = self.begin(connection)
        transaction.scoped = True
        try:
            try:
                yield transaction
            except BaseException as e:
                transaction.rollback_quietly(f"{type(e).__name__}: {e}")
                raise

            if transaction.active:
                if commit_on_exit:
                    transaction.commit()
                else:
                    transaction.rollback_reason = 'scope exited without commit'
                    transaction.rollback()
            elif commit_on_exit and transaction.aborted:
                raise TransactionAlreadyClosed(
                    f"Cannot commit: transaction on connection #{connection.id} was rolled back "
                    f"({transaction.rollback_reason})"
                )
        finally:
            transaction.detach()
