"""
Statement execution on a borrowed connection.

Every statement is parameterized: values travel through the driver's
positional binding, never through the SQL text. Statement handles are scoped
and released on every exit path.
"""

import time
import threading
from contextlib import contextmanager
from typing import (
    Any, Callable, Dict, Generic, Iterator, Mapping, Optional, Sequence, Tuple, TypeVar,
)

from .cancellation import CancelToken
from .classifier import ErrorClassifier
from .errors import DatabaseError, SyntaxOrSchemaError, TransactionAlreadyClosed, TransientError
from .identifiers import quote_identifier
from .pool import Connection
from ..config.logging_config import DatabaseLoggerAdapter, get_db_logger
from ..drivers.base import StatementHandle

R = TypeVar('R')

# row_factory(columns, values) -> projected row
RowFactory = Callable[[Tuple[str, ...], Tuple[Any, ...]], Any]


def tuple_row(columns: Tuple[str, ...], values: Tuple[Any, ...]) -> Tuple[Any, ...]:
    return tuple(values)


def dict_row(columns: Tuple[str, ...], values: Tuple[Any, ...]) -> Dict[str, Any]:
    return dict(zip(columns, values))


def _noop() -> None:
    pass


def coerce_params(params: Optional[Sequence[Any]]) -> Tuple[Any, ...]:
    """
    Normalize statement parameters to a tuple.

    Raises:
        SyntaxOrSchemaError: ``params`` is not a positional sequence
    """
    if params is None:
        return ()
    if isinstance(params, (str, bytes, bytearray, Mapping)):
        raise SyntaxOrSchemaError(
            f"Statement parameters must be a positional sequence, got {type(params).__name__}"
        )
    try:
        return tuple(params)
    except TypeError as e:
        raise SyntaxOrSchemaError(
            f"Statement parameters must be a positional sequence, got {type(params).__name__}"
        ) from e


class RowStream(Generic[R]):
    """
    Lazy, forward-only, single-pass sequence of rows.

    Rows are fetched one at a time. The statement handle is released exactly
    once: when the stream is exhausted, closed, exited as a context manager, or
    fails. Iterating again after that yields nothing; re-issue the query to
    read the rows again.

    Usage:
        with executor.query(conn, "SELECT id, name FROM users") as rows:
            for row in rows:
                ...
    """

    def __init__(self, executor: 'StatementExecutor', connection: Connection,
                 handle: StatementHandle, sql: str, row_factory: RowFactory,
                 cancel: Optional[CancelToken] = None, timeout: Optional[float] = None,
                 unwatch: Callable[[], None] = _noop,
                 on_close: Optional[Callable[[], None]] = None):
        self._executor = executor
        self._connection = connection
        self._handle: Optional[StatementHandle] = handle
        self._sql = sql
        self._row_factory = row_factory
        self._cancel = cancel
        self._timeout = timeout
        self._unwatch = unwatch
        self._on_close = on_close
        self._columns: Tuple[str, ...] = handle.columns
        self.rows_fetched = 0
        self.closed = False

    @property
    def columns(self) -> Tuple[str, ...]:
        return self._columns

    def __iter__(self) -> Iterator[R]:
        return self

    def __next__(self) -> R:
        if self.closed:
            raise StopIteration

        token = self._cancel
        try:
            with self._executor._deadline(self._connection, self._timeout) as deadline:
                if deadline is not None:
                    token = deadline
                values = self._handle.fetchone()
        except Exception as e:
            self._release_handle()
            error = self._executor._fail(self._connection, e, self._sql, token)
            self.close()
            raise error

        if values is None:
            self.close()
            raise StopIteration

        self.rows_fetched += 1
        try:
            return self._row_factory(self._columns, tuple(values))
        except Exception:
            self.close()
            raise

    def fetchall(self) -> list:
        """Consume the remaining rows into a list."""
        return list(self)

    def first(self) -> Optional[R]:
        """Return the next row, or None, and close the stream."""
        try:
            return next(self, None)
        finally:
            self.close()

    def _release_handle(self) -> None:
        self._unwatch()
        self._unwatch = _noop
        self._executor._close_handle(self._handle)
        self._handle = None

    def close(self) -> None:
        """Release the statement handle. Idempotent."""
        if self.closed:
            return
        self.closed = True
        try:
            self._release_handle()
            self._executor._count(rows_fetched=self.rows_fetched)
        finally:
            on_close, self._on_close = self._on_close, None
            if on_close is not None:
                on_close()

    def __enter__(self) -> 'RowStream[R]':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class PreparedStatement:
    """
    One statement template bound to one handle, executed once per parameter tuple.

    Obtained from ``StatementExecutor.prepare``; valid only inside that block.
    """

    def __init__(self, executor: 'StatementExecutor', connection: Connection,
                 handle: StatementHandle, sql: str, cancel: Optional[CancelToken] = None,
                 timeout: Optional[float] = None):
        self._executor = executor
        self._connection = connection
        self._handle = handle
        self.sql = sql
        self._cancel = cancel
        self._timeout = timeout
        self.executions = 0

    def execute(self, params: Optional[Sequence[Any]] = ()) -> int:
        """
        Bind ``params`` and run the statement.

        Returns:
            Affected-row count, -1 when the driver cannot tell
        """
        values = coerce_params(params)
        self._executor._check_transaction(self._connection, self.sql)
        start_time = time.monotonic()
        token = self._cancel
        try:
            with self._executor._deadline(self._connection, self._timeout) as deadline:
                if deadline is not None:
                    token = deadline
                self._handle.execute(self.sql, values)
                rowcount = self._handle.affected_rows()
        except Exception as e:
            raise self._executor._fail(self._connection, e, self.sql, token)

        self.executions += 1
        self._executor._track(self.sql, values, time.monotonic() - start_time)
        return rowcount


class StatementExecutor:
    """
    Prepares, binds and runs statements on a borrowed connection.

    The executor is stateless apart from statistics; it can be shared by any
    number of threads as long as each connection is used by one thread at a time.

    Args:
        classifier: Error classifier for driver failures
        logger: Logger adapter
        slow_query_threshold: Statements slower than this (seconds) are logged
        default_timeout: Timeout applied to each driver call (execute or row fetch)
            when no cancel token is given
    """

    def __init__(self, classifier: Optional[ErrorClassifier] = None,
                 logger: Optional[DatabaseLoggerAdapter] = None,
                 slow_query_threshold: float = 1.0,
                 default_timeout: Optional[float] = None):
        self.classifier = classifier or ErrorClassifier()
        self.logger = logger or get_db_logger('executor')
        self.slow_query_threshold = slow_query_threshold
        self.default_timeout = default_timeout

        # Performance tracking
        self._stats_lock = threading.Lock()
        self.stats = {
            'statements_executed': 0,
            'statements_failed': 0,
            'slow_statements': 0,
            'rows_fetched': 0,
            'total_time': 0.0,
        }

    def execute(self, connection: Connection, sql: str, params: Optional[Sequence[Any]] = (),
                cancel: Optional[CancelToken] = None) -> int:
        """
        Run a mutating statement (INSERT/UPDATE/DELETE/DDL).

        Returns:
            Affected-row count, -1 when the driver cannot tell
        """
        values = coerce_params(params)
        with self._statement(connection, sql, values, cancel) as handle:
            handle.execute(sql, values)
            return handle.affected_rows()

    def insert(self, connection: Connection, sql: str, params: Optional[Sequence[Any]] = (),
               id_column: Optional[str] = None, cancel: Optional[CancelToken] = None) -> Any:
        """
        Run an INSERT and return the store-generated key.

        Drivers with ``RETURNING`` support read ``id_column`` back from the
        statement; others report the driver's last row id.
        """
        values = coerce_params(params)
        returning = bool(id_column) and connection.driver.supports_returning
        if returning:
            sql = f"{sql} RETURNING {quote_identifier(id_column)}"

        with self._statement(connection, sql, values, cancel) as handle:
            handle.execute(sql, values)
            if returning:
                row = handle.fetchone()
                return row[0] if row else None
            return handle.last_insert_id()

    def query(self, connection: Connection, sql: str, params: Optional[Sequence[Any]] = (),
              row_factory: Optional[RowFactory] = None, cancel: Optional[CancelToken] = None,
              on_close: Optional[Callable[[], None]] = None) -> RowStream:
        """
        Run a read statement and return a lazy row stream.

        Args:
            row_factory: ``f(columns, values)`` projecting each row (tuples by default)
            on_close: Called once when the stream is released
        """
        values = coerce_params(params)
        self._check_transaction(connection, sql)
        if cancel is not None and cancel.cancelled:
            raise TransientError("Statement cancelled before start", statement=sql)
        timeout = None if cancel is not None else self.default_timeout

        start_time = time.monotonic()
        handle = None
        unwatch = _noop
        token = cancel
        try:
            handle = connection.driver.open_statement(connection.raw)
            unwatch = self._watch(connection, cancel)
            with self._deadline(connection, timeout) as deadline:
                if deadline is not None:
                    token = deadline
                handle.execute(sql, values)
        except Exception as e:
            unwatch()
            self._close_handle(handle)
            raise self._fail(connection, e, sql, token)

        self._track(sql, values, time.monotonic() - start_time)
        return RowStream(
            self, connection, handle, sql, row_factory or tuple_row,
            cancel=cancel, timeout=timeout, unwatch=unwatch, on_close=on_close,
        )

    @contextmanager
    def prepare(self, connection: Connection, sql: str,
                cancel: Optional[CancelToken] = None) -> Iterator[PreparedStatement]:
        """
        Hold one statement handle open for repeated executions of ``sql``.

        Failures of individual executions are classified and raised from
        ``PreparedStatement.execute``; the handle is released when the block ends.

        Usage:
            with executor.prepare(conn, "INSERT INTO t (a) VALUES (?)") as stmt:
                for value in values:
                    stmt.execute((value,))
        """
        self._check_transaction(connection, sql)
        if cancel is not None and cancel.cancelled:
            raise TransientError("Statement cancelled before start", statement=sql)
        timeout = None if cancel is not None else self.default_timeout

        handle = None
        unwatch = _noop
        try:
            try:
                handle = connection.driver.open_statement(connection.raw)
                unwatch = self._watch(connection, cancel)
            except Exception as e:
                raise self._fail(connection, e, sql, cancel)
            yield PreparedStatement(self, connection, handle, sql, cancel, timeout)
        finally:
            unwatch()
            self._close_handle(handle)

    @contextmanager
    def _statement(self, connection: Connection, sql: str, values: Tuple[Any, ...],
                   cancel: Optional[CancelToken]) -> Iterator[StatementHandle]:
        """Scoped statement handle with cancellation and error classification."""
        self._check_transaction(connection, sql)
        token, owns_token = self._token(cancel)
        if token is not None and token.cancelled:
            raise TransientError("Statement cancelled before start", statement=sql)

        start_time = time.monotonic()
        handle = None
        unwatch = _noop
        try:
            handle = connection.driver.open_statement(connection.raw)
            unwatch = self._watch(connection, token)
            yield handle
        except Exception as e:
            unwatch()
            unwatch = _noop
            self._close_handle(handle)
            handle = None
            raise self._fail(connection, e, sql, token)
        finally:
            unwatch()
            self._close_handle(handle)
            if owns_token:
                token.close()

        self._track(sql, values, time.monotonic() - start_time)

    def _token(self, cancel: Optional[CancelToken]) -> Tuple[Optional[CancelToken], bool]:
        if cancel is not None:
            return cancel, False
        if self.default_timeout:
            return CancelToken.with_timeout(self.default_timeout), True
        return None, False

    @contextmanager
    def _deadline(self, connection: Connection,
                  timeout: Optional[float]) -> Iterator[Optional[CancelToken]]:
        """Interrupt the session if one driver call outlasts ``timeout``."""
        if not timeout:
            yield None
            return
        token = CancelToken.with_timeout(timeout)
        unwatch = self._watch(connection, token)
        try:
            yield token
        finally:
            unwatch()
            token.close()

    def _check_transaction(self, connection: Connection, sql: str) -> None:
        transaction = connection.transaction
        if transaction is not None and not transaction.active:
            raise TransactionAlreadyClosed(
                f"Transaction on connection #{connection.id} is already {transaction.state.value} "
                f"({transaction.rollback_reason or 'ended'}); statements would run outside it",
                statement=sql,
            )

    def _watch(self, connection: Connection, token: Optional[CancelToken]) -> Callable[[], None]:
        if token is None:
            return _noop
        return token.add_callback(lambda: self._interrupt(connection))

    def _interrupt(self, connection: Connection) -> None:
        self.logger.warning(f"Interrupting statement on connection #{connection.id}")
        connection.mark_broken('statement cancelled')
        try:
            connection.driver.interrupt(connection.raw)
        except Exception as e:
            self.logger.warning(f"Could not interrupt connection #{connection.id}: {e}")

    def _close_handle(self, handle: Optional[StatementHandle]) -> None:
        if handle is None:
            return
        try:
            handle.close()
        except Exception as e:
            self.logger.warning(f"Error closing statement handle: {e}")

    def _fail(self, connection: Connection, exc: BaseException, sql: str,
              cancel: Optional[CancelToken]) -> DatabaseError:
        """
        Classify a statement failure and apply its consequences.

        The connection is marked broken when the failure implicates the session
        and an active transaction is rolled back before the error propagates.
        """
        if cancel is not None and cancel.cancelled:
            connection.mark_broken('statement cancelled')
            if isinstance(exc, DatabaseError):
                error = exc
            else:
                error = TransientError(f"Statement cancelled: {exc}", statement=sql, original=exc)
        else:
            error = self.classifier.wrap(exc, statement=sql)
            if error.kind.breaks_connection:
                connection.mark_broken(error.message)

        self._count(statements_failed=1)
        self.logger.error(f"Statement failed [{error.kind.value}]: {error.message}")
        self.logger.query(sql)

        if connection.in_transaction:
            connection.transaction.rollback_quietly(error.message)
        return error

    def _track(self, sql: str, values: Tuple[Any, ...], duration: float) -> None:
        slow = duration > self.slow_query_threshold
        self._count(statements_executed=1, total_time=duration, slow_statements=int(slow))
        if slow:
            self.logger.warning(f"Slow statement detected: {duration:.3f}s > {self.slow_query_threshold}s")
        self.logger.query(sql, values, duration)

    def _count(self, **increments) -> None:
        with self._stats_lock:
            for key, value in increments.items():
                self.stats[key] += value

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self.stats.copy()
        executed = stats['statements_executed']
        stats['avg_statement_time'] = stats['total_time'] / executed if executed else 0.0
        return stats
