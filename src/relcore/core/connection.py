"""
Connection manager.

This module provides the primary entry point to the relcore data-access layer.
It builds the driver, pool, executor and transaction manager from one settings
object and exposes scoped connections, transactions, statements and batches.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

from .batch import BatchExecutor, BatchItemResult
from .cancellation import CancelToken
from .classifier import ErrorClassifier
from .executor import RowFactory, RowStream, StatementExecutor
from .identifiers import split_statements
from .pool import Connection, ConnectionPool
from .retry import retry_with_settings
from .transaction import Transaction, TransactionManager
from ..config.db_config import DatabaseSettings, get_default_config, validate_config, deep_merge
from ..config.logging_config import setup_db_logging, get_db_logger
from ..drivers import create_driver
from ..drivers.base import Driver

T = TypeVar('T')


def _resolve_settings(settings: Union[DatabaseSettings, Dict[str, Any], str, None]) -> DatabaseSettings:
    if isinstance(settings, DatabaseSettings):
        return settings
    config = get_default_config()
    if isinstance(settings, str):
        config['connection']['dsn'] = settings
    elif settings:
        deep_merge(config, settings)
    return validate_config(config)


class ConnectionManager:
    """
    Main connection manager for database operations.

    Usage:
        with ConnectionManager('sqlite:///data/app.db') as db:
            db.execute("INSERT INTO users (name) VALUES (?)", ('ada',))

            with db.transaction() as tx:
                db.execute("UPDATE ...", (...), connection=tx.connection)

            with db.query("SELECT id, name FROM users") as rows:
                for row in rows:
                    ...
    """

    def __init__(self, settings: Union[DatabaseSettings, Dict[str, Any], str, None] = None,
                 driver: Optional[Driver] = None,
                 classifier: Optional[ErrorClassifier] = None):
        """
        Initialize connection manager with configuration.

        Args:
            settings: Settings model, nested config dict, DSN string, or None for defaults
            driver: Driver to use instead of the one implied by the DSN
            classifier: Error classifier shared by all components
        """
        self.settings = _resolve_settings(settings)
        setup_db_logging(self.settings.logging)

        self.driver = driver or create_driver(self.settings)
        self.classifier = classifier or ErrorClassifier()
        self.logger = get_db_logger('connection_manager', self.driver.database)

        pool_settings = self.settings.pool
        self.pool = ConnectionPool(
            self.driver,
            max_size=pool_settings.max_size,
            min_idle=pool_settings.min_idle,
            acquire_timeout=pool_settings.acquire_timeout,
            classifier=self.classifier,
            logger=get_db_logger('pool', self.driver.database),
        )
        self.executor = StatementExecutor(
            classifier=self.classifier,
            logger=get_db_logger('executor', self.driver.database),
            slow_query_threshold=self.settings.query.slow_query_threshold,
            default_timeout=self.settings.query.timeout,
        )
        self.transactions = TransactionManager(
            classifier=self.classifier,
            logger=get_db_logger('transaction', self.driver.database),
        )

        self.logger.info(f"Connection manager initialized: {self.driver.name} {self.driver.database}")

    @property
    def database(self) -> str:
        return self.driver.database

    @contextmanager
    def get_connection(self, timeout: Optional[float] = None,
                       cancel: Optional[CancelToken] = None) -> Iterator[Connection]:
        """
        Borrow a connection for the duration of a block.

        Usage:
            with manager.get_connection() as conn:
                manager.executor.execute(conn, "DELETE FROM t WHERE id = ?", (1,))
        """
        start_time = time.monotonic()
        with self.pool.connection(timeout=timeout, cancel=cancel) as conn:
            yield conn
        self.logger.performance('connection_hold', time.monotonic() - start_time, 's')

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator[Transaction]:
        """
        Run a block in a transaction on a borrowed connection.

        Commits on normal exit, rolls back and re-raises on error. The block may
        also commit or roll back explicitly.
        """
        with self.get_connection(timeout=timeout) as conn:
            with self.transactions.scope(conn, commit_on_exit=True) as tx:
                yield tx

    def with_transaction(self, fn: Callable[[Transaction], T], timeout: Optional[float] = None) -> T:
        """
        Run ``fn(transaction)``; commit on normal return, roll back and re-raise on error.
        """
        with self.transaction(timeout=timeout) as tx:
            return fn(tx)

    @contextmanager
    def _borrow(self, connection: Optional[Connection]) -> Iterator[Connection]:
        if connection is not None:
            yield connection
        else:
            with self.get_connection() as conn:
                yield conn

    def execute(self, sql: str, params: Optional[Sequence[Any]] = (),
                connection: Optional[Connection] = None,
                cancel: Optional[CancelToken] = None) -> int:
        """Run a mutating statement; returns the affected-row count."""
        with self._borrow(connection) as conn:
            return self.executor.execute(conn, sql, params, cancel=cancel)

    def insert(self, sql: str, params: Optional[Sequence[Any]] = (), id_column: Optional[str] = None,
               connection: Optional[Connection] = None,
               cancel: Optional[CancelToken] = None) -> Any:
        """Run an INSERT; returns the store-generated key."""
        with self._borrow(connection) as conn:
            return self.executor.insert(conn, sql, params, id_column=id_column, cancel=cancel)

    def query(self, sql: str, params: Optional[Sequence[Any]] = (),
              row_factory: Optional[RowFactory] = None,
              connection: Optional[Connection] = None,
              cancel: Optional[CancelToken] = None) -> RowStream:
        """
        Run a read statement and return a lazy row stream.

        Without ``connection`` the stream holds a pooled connection until it is
        exhausted or closed; use it as a context manager when it may be
        abandoned early.
        """
        if connection is not None:
            return self.executor.query(connection, sql, params, row_factory=row_factory, cancel=cancel)

        conn = self.pool.acquire(cancel=cancel)
        try:
            return self.executor.query(
                conn, sql, params, row_factory=row_factory, cancel=cancel,
                on_close=lambda: self.pool.release(conn),
            )
        except BaseException:
            self.pool.release(conn)
            raise

    @contextmanager
    def batch(self, sql: str, types: Optional[Sequence[Optional[type]]] = None,
              connection: Optional[Connection] = None) -> Iterator[BatchExecutor]:
        """
        Scope a batch on a borrowed (or the given) connection.

        Tuples still pending when the block ends are discarded.
        """
        with self._borrow(connection) as conn:
            batch = BatchExecutor(self.executor, conn, sql, types=types)
            try:
                yield batch
            finally:
                if len(batch):
                    self.logger.warning(f"Discarding {len(batch)} unsubmitted batch tuples")
                    batch.clear()

    def execute_batch(self, sql: str, rows: Sequence[Sequence[Any]],
                      connection: Optional[Connection] = None) -> List[BatchItemResult]:
        """Submit ``rows`` for ``sql`` as one batch; returns one result per row."""
        with self.batch(sql, connection=connection) as batch:
            for row in rows:
                batch.add_to_batch(row)
            return batch.execute_batch()

    def execute_query(self, query: str, params: Optional[Sequence[Any]] = None,
                      fetch: str = 'all') -> Any:
        """
        Execute a query with automatic connection management.

        Args:
            query: SQL query string
            params: Positional parameters
            fetch: Fetch method ('all', 'one', 'none')

        Returns:
            List of tuples, one tuple (or None), or the affected-row count
        """
        if fetch not in ('all', 'one', 'none'):
            raise ValueError(f"Invalid fetch method: {fetch}")

        if fetch == 'none':
            return self.execute(query, params)
        with self.query(query, params) as rows:
            return rows.first() if fetch == 'one' else rows.fetchall()

    def execute_transaction(self, operations: Sequence[Tuple[str, Optional[Sequence[Any]]]]) -> List[int]:
        """
        Execute multiple statements in a single transaction.

        Args:
            operations: List of (sql, params) tuples

        Returns:
            Affected-row count for each operation
        """
        start_time = time.monotonic()
        with self.transaction() as tx:
            results = [
                self.executor.execute(tx.connection, sql, params)
                for sql, params in operations
            ]
        self.logger.transaction(f"{len(operations)} operations", True, time.monotonic() - start_time)
        return results

    def execute_script(self, script: str) -> int:
        """
        Execute a SQL script (multiple statements) on one connection.

        Returns:
            Number of statements executed
        """
        statements = split_statements(script)
        start_time = time.monotonic()
        with self.get_connection() as conn:
            for statement in statements:
                self.executor.execute(conn, statement)
        duration = time.monotonic() - start_time
        self.logger.info(f"Executed script with {len(statements)} statements in {duration:.3f}s")
        return len(statements)

    def retry(self, operation: Callable[[], T], **kwargs) -> T:
        """Run ``operation`` with the configured caller-controlled retry policy."""
        return retry_with_settings(operation, self.settings.retry, **kwargs)

    def get_performance_stats(self) -> Dict[str, Any]:
        """Get performance statistics for the connection manager."""
        return {
            'database': self.database,
            'driver': self.driver.name,
            'executor': self.executor.get_stats(),
            'pool_stats': self.pool.get_stats(),
        }

    def health_check(self) -> Dict[str, Any]:
        """Perform health check on database connection."""
        try:
            with self.query("SELECT 1") as rows:
                result = rows.first()
            if not result or result[0] != 1:
                raise RuntimeError("Basic query failed")

            return {
                'status': 'healthy',
                'database': self.database,
                'driver': self.driver.name,
                'pool_stats': self.pool.get_stats(),
                'timestamp': time.time(),
            }

        except Exception as e:
            return {
                'status': 'unhealthy',
                'error': str(e),
                'database': self.database,
                'driver': self.driver.name,
                'timestamp': time.time(),
            }

    def close(self) -> None:
        """Shut the pool down and release all connections."""
        self.logger.info("Shutting down connection manager")
        self.pool.shutdown(timeout=self.settings.pool.shutdown_timeout)
        self.logger.info("Connection manager shutdown complete")

    def __enter__(self) -> 'ConnectionManager':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
