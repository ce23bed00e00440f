"""
Bounded connection pool.

Thread-safe checkout/release of driver sessions with a maximum size, a
minimum-idle floor, lazy validation and eviction of broken connections.
"""

import time
import itertools
import threading
from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Any, Deque, Dict, Iterator, Optional, TYPE_CHECKING

from .errors import PoolClosed, PoolExhausted, TransientError
from .cancellation import CancelToken
from .classifier import ErrorClassifier
from ..config.logging_config import DatabaseLoggerAdapter, get_db_logger

if TYPE_CHECKING:
    from .transaction import Transaction
    from ..drivers.base import Driver

# Upper bound on a single condition wait while a cancel token is watched
_CANCEL_POLL_INTERVAL = 0.05


class ConnectionState(str, Enum):
    """Lifecycle state of a pooled connection."""
    IDLE = "idle"
    IN_USE = "in_use"
    BROKEN = "broken"
    CLOSED = "closed"


class Connection:
    """
    One live database session owned by a pool.

    While checked out the borrower has exclusive use. A borrower that sees the
    session fail marks it broken so the pool closes it on release.
    """

    _ids = itertools.count(1)

    def __init__(self, raw: Any, driver: 'Driver'):
        self.raw = raw
        self.driver = driver
        self.id = next(self._ids)
        self.state = ConnectionState.IDLE
        self.created_at = time.time()
        self.last_used = self.created_at
        self.checkout_count = 0
        self.broken_reason: Optional[str] = None
        self.transaction: Optional['Transaction'] = None

    @property
    def broken(self) -> bool:
        return self.state == ConnectionState.BROKEN

    @property
    def in_transaction(self) -> bool:
        return self.transaction is not None and self.transaction.active

    @property
    def autocommit(self) -> bool:
        return not self.in_transaction

    def mark_broken(self, reason: str = '') -> None:
        """Flag the session as unusable. The pool closes it on release."""
        if self.state in (ConnectionState.IN_USE, ConnectionState.IDLE):
            self.state = ConnectionState.BROKEN
            self.broken_reason = reason or 'unspecified'

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, state={self.state.value}, driver={self.driver.name})"


class ConnectionPool:
    """
    Thread-safe bounded connection pool.

    Usage:
        pool = ConnectionPool(driver, max_size=10, min_idle=2)

        with pool.connection() as conn:
            ...

        conn = pool.acquire(timeout=5.0)
        try:
            ...
        finally:
            pool.release(conn)

        pool.shutdown()
    """

    def __init__(self, driver: 'Driver', max_size: int = 5, min_idle: int = 1,
                 acquire_timeout: float = 30.0,
                 classifier: Optional[ErrorClassifier] = None,
                 logger: Optional[DatabaseLoggerAdapter] = None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if not 0 <= min_idle <= max_size:
            raise ValueError("min_idle must be between 0 and max_size")

        self.driver = driver
        self.max_size = max_size
        self.min_idle = min_idle
        self.acquire_timeout = acquire_timeout
        self.classifier = classifier or ErrorClassifier()
        self.logger = logger or get_db_logger('pool', driver.database)

        self._cond = threading.Condition(threading.Lock())
        self._idle: Deque[Connection] = deque()
        self._connections: Dict[int, Connection] = {}
        self._opening = 0
        self._closed = False
        self._shutdown_complete = False

        # Statistics
        self.stats = {
            'connections_created': 0,
            'connections_acquired': 0,
            'connections_released': 0,
            'connections_closed': 0,
            'broken_evicted': 0,
            'connections_failed': 0,
            'pool_waits': 0,
            'total_wait_time': 0.0,
        }

        self._initialize_pool()

    def _initialize_pool(self) -> None:
        """Open the minimum number of idle connections."""
        self._replenish(raise_errors=True)
        self.logger.info(
            f"Connection pool initialized for {self.driver.name}: "
            f"max={self.max_size}, min_idle={self.min_idle}, idle={len(self._idle)}"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _total(self) -> int:
        return len(self._connections) + self._opening

    def _in_use(self) -> int:
        return sum(1 for c in self._connections.values() if c.state != ConnectionState.IDLE)

    def _open_connection(self) -> Connection:
        """
        Open a connection for a slot already reserved in ``_opening``.

        Runs without the lock held; the slot is released on failure.
        """
        try:
            raw = self.driver.connect()
        except Exception as e:
            with self._cond:
                self._opening -= 1
                self.stats['connections_failed'] += 1
                self._cond.notify_all()
            self.logger.connection_event('error', f"Failed to open connection: {e}")
            raise self.classifier.wrap(e) from e

        conn = Connection(raw, self.driver)
        with self._cond:
            self._opening -= 1
            self._connections[conn.id] = conn
            self.stats['connections_created'] += 1
        self.logger.connection_event('created', f"#{conn.id}")
        return conn

    def _close_connection(self, conn: Connection) -> None:
        """Close ``conn`` and forget it. Runs without the lock held."""
        try:
            self.driver.close(conn.raw)
        except Exception as e:
            self.logger.warning(f"Error closing connection #{conn.id}: {e}")
        conn.state = ConnectionState.CLOSED
        with self._cond:
            self._connections.pop(conn.id, None)
            self.stats['connections_closed'] += 1
            self._cond.notify_all()
        self.logger.connection_event('closed', f"#{conn.id}")

    def _replenish(self, raise_errors: bool = False) -> None:
        """Open connections until the idle floor is met or the pool is full."""
        while True:
            with self._cond:
                if self._closed:
                    return
                if len(self._idle) + self._opening >= self.min_idle or self._total() >= self.max_size:
                    return
                self._opening += 1

            try:
                conn = self._open_connection()
            except Exception as e:
                if raise_errors:
                    raise
                self.logger.warning(f"Could not replenish idle connections: {e}")
                return

            with self._cond:
                if self._closed:
                    closing = conn
                else:
                    closing = None
                    self._idle.append(conn)
                    self._cond.notify()
            if closing is not None:
                self._close_connection(closing)
                return

    def acquire(self, timeout: Optional[float] = None,
                cancel: Optional[CancelToken] = None) -> Connection:
        """
        Acquire a connection for exclusive use.

        Args:
            timeout: Seconds to wait (defaults to the pool's acquire_timeout)
            cancel: Token that aborts the wait

        Raises:
            PoolExhausted: No connection became available within ``timeout``
            PoolClosed: Shutdown was initiated
            TransientError: ``cancel`` fired while waiting
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        start_time = time.monotonic()
        deadline = start_time + timeout
        waited = False
        evicted = []
        conn = None

        try:
            with self._cond:
                while True:
                    if self._closed:
                        raise PoolClosed("Connection pool is closed")
                    if cancel is not None and cancel.cancelled:
                        raise TransientError("Connection acquire cancelled")

                    while self._idle:
                        candidate = self._idle.popleft()
                        if candidate.state == ConnectionState.IDLE:
                            conn = candidate
                            break
                        # Broken while idle: never hand it out
                        evicted.append(candidate)
                        self.stats['broken_evicted'] += 1

                    if conn is not None:
                        conn.state = ConnectionState.IN_USE
                        conn.checkout_count += 1
                        conn.last_used = time.time()
                        self.stats['connections_acquired'] += 1
                        break

                    if self._total() - len(evicted) < self.max_size:
                        self._opening += 1
                        break

                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhausted(
                            f"No connection available within {timeout:.3f}s "
                            f"(max_size={self.max_size}, in_use={self._in_use()})"
                        )
                    waited = True
                    wait_for = remaining if cancel is None else min(remaining, _CANCEL_POLL_INTERVAL)
                    self._cond.wait(wait_for)
        finally:
            for stale in evicted:
                self._close_connection(stale)

        if conn is None:
            conn = self._open_connection()
            with self._cond:
                if self._closed:
                    closing = True
                else:
                    closing = False
                    conn.state = ConnectionState.IN_USE
                    conn.checkout_count += 1
                    conn.last_used = time.time()
                    self.stats['connections_acquired'] += 1
            if closing:
                self._close_connection(conn)
                raise PoolClosed("Connection pool is closed")

        wait_time = time.monotonic() - start_time
        if waited:
            with self._cond:
                self.stats['pool_waits'] += 1
                self.stats['total_wait_time'] += wait_time
            self.logger.debug(f"Pool wait: {wait_time:.3f}s")

        self.logger.connection_event('acquired', f"#{conn.id}")
        return conn

    def release(self, conn: Connection) -> None:
        """
        Return a connection to the pool.

        Broken connections are closed and replaced up to the idle floor. A
        connection that still carries an active transaction is rolled back.

        Raises:
            ValueError: ``conn`` is not checked out from this pool
        """
        with self._cond:
            if self._closed and conn.state == ConnectionState.CLOSED:
                # Closed underneath the borrower by a timed-out shutdown
                return
            owned = self._connections.get(conn.id) is conn
            checked_out = conn.state in (ConnectionState.IN_USE, ConnectionState.BROKEN)
            if not owned or not checked_out or conn in self._idle:
                raise ValueError(f"{conn!r} is not checked out from this pool")

        if conn.in_transaction:
            self.logger.warning(f"Connection #{conn.id} released with an active transaction, rolling back")
            conn.transaction.rollback_quietly('released with active transaction')

        with self._cond:
            self.stats['connections_released'] += 1
            recycle = conn.state == ConnectionState.IN_USE and not self._closed
            if recycle:
                conn.state = ConnectionState.IDLE
                conn.last_used = time.time()
                conn.transaction = None
                self._idle.append(conn)
                self._cond.notify()

        if recycle:
            self.logger.connection_event('released', f"#{conn.id}")
            return

        if conn.broken:
            with self._cond:
                self.stats['broken_evicted'] += 1
            self.logger.connection_event('broken', f"#{conn.id} evicted: {conn.broken_reason}")
        self._close_connection(conn)
        self._replenish()

    @contextmanager
    def connection(self, timeout: Optional[float] = None,
                   cancel: Optional[CancelToken] = None) -> Iterator[Connection]:
        """Scoped acquire; the connection is released on every exit path."""
        conn = self.acquire(timeout=timeout, cancel=cancel)
        try:
            yield conn
        finally:
            self.release(conn)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Shut the pool down.

        Blocks new acquires, waits for in-flight borrows to be released, then
        closes every connection. Borrows still outstanding after ``timeout``
        are closed underneath their holders. Idempotent.
        """
        with self._cond:
            if self._shutdown_complete:
                return
            first_call = not self._closed
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._cond.notify_all()

        if first_call:
            self.logger.info("Shutting down connection pool")

        for conn in idle:
            self._close_connection(conn)

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._connections or self._opening:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._cond.wait(remaining)
            leftovers = list(self._connections.values())

        if leftovers:
            self.logger.warning(f"Closing {len(leftovers)} connections still in use after shutdown timeout")
            for conn in leftovers:
                self._close_connection(conn)

        with self._cond:
            if self._shutdown_complete:
                return
            self._shutdown_complete = True

        try:
            self.driver.dispose()
        except Exception as e:
            self.logger.warning(f"Error disposing driver: {e}")
        self.logger.info("Connection pool shutdown complete")

    def get_stats(self) -> Dict[str, Any]:
        """Get connection pool statistics."""
        with self._cond:
            idle = len(self._idle)
            return {
                'max_size': self.max_size,
                'min_idle': self.min_idle,
                'total_connections': len(self._connections),
                'idle_connections': idle,
                'active_connections': len(self._connections) - idle,
                'opening_connections': self._opening,
                'closed': self._closed,
                'stats': self.stats.copy(),
            }
