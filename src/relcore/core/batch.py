"""
Batched execution of one statement template over many parameter tuples.
"""

import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Type

from .cancellation import CancelToken
from .errors import BatchShapeMismatch, DatabaseError
from .executor import StatementExecutor, coerce_params
from .identifiers import count_placeholders
from .pool import Connection


@dataclass
class BatchItemResult:
    """Outcome of one tuple in a batch."""
    index: int
    rowcount: Optional[int] = None
    error: Optional[DatabaseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _compatible(value: Any, expected: Optional[type]) -> bool:
    if value is None or expected is None:
        return True
    if isinstance(value, bool) or expected is bool:
        return type(value) is expected
    if expected is float and isinstance(value, int):
        return True
    return isinstance(value, expected)


class BatchExecutor:
    """
    Accumulates parameter tuples for one statement and submits them together.

    The statement shape is fixed at creation: the arity is the number of ``?``
    placeholders in the template and the per-position types are either given
    explicitly or pinned by the first non-None value seen in each position.

    Without an enclosing transaction every tuple is an independent operation:
    a failing tuple records its error and the remaining tuples still run. When
    the connection has an active transaction the batch is atomic: the first
    failure rolls the transaction back and is raised with the partial results
    attached as ``error.batch_results``.

    Usage:
        batch = BatchExecutor(executor, conn, "INSERT INTO t (a, b) VALUES (?, ?)")
        batch.add_to_batch((1, 'x'))
        batch.add_to_batch((2, 'y'))
        results = batch.execute_batch()
    """

    def __init__(self, executor: StatementExecutor, connection: Connection, sql: str,
                 types: Optional[Sequence[Optional[Type]]] = None):
        self.executor = executor
        self.connection = connection
        self.sql = sql
        self.arity = count_placeholders(sql)
        if types is not None and len(types) != self.arity:
            raise BatchShapeMismatch(
                f"Statement has {self.arity} placeholders but {len(types)} types were given",
                statement=sql,
            )
        self._types: List[Optional[type]] = list(types) if types is not None else [None] * self.arity
        self._pending: List[Tuple[Any, ...]] = []

    @property
    def shape(self) -> Tuple[Optional[type], ...]:
        return tuple(self._types)

    def __len__(self) -> int:
        return len(self._pending)

    def add_to_batch(self, params: Sequence[Any]) -> None:
        """
        Append one parameter tuple.

        Raises:
            BatchShapeMismatch: Arity or types differ from the statement shape
        """
        values = coerce_params(params)
        if len(values) != self.arity:
            raise BatchShapeMismatch(
                f"Expected {self.arity} parameters, got {len(values)}", statement=self.sql
            )

        for position, (value, expected) in enumerate(zip(values, self._types)):
            if not _compatible(value, expected):
                raise BatchShapeMismatch(
                    f"Parameter {position} is {type(value).__name__}, expected {expected.__name__}",
                    statement=self.sql,
                )

        for position, value in enumerate(values):
            if self._types[position] is None and value is not None:
                self._types[position] = type(value)

        self._pending.append(values)

    def clear(self) -> None:
        self._pending.clear()

    def execute_batch(self, cancel: Optional[CancelToken] = None) -> List[BatchItemResult]:
        """
        Submit every pending tuple over one statement handle.

        The pending job is cleared whether or not the batch succeeds.

        Returns:
            One result per tuple, in submission order
        """
        pending, self._pending = self._pending, []
        if not pending:
            return []

        # A bound transaction, active or aborted, makes the batch all-or-nothing
        atomic = self.connection.transaction is not None
        results: List[BatchItemResult] = []
        start_time = time.monotonic()
        failures = 0

        session_lost: Optional[DatabaseError] = None
        try:
            with self.executor.prepare(self.connection, self.sql, cancel=cancel) as statement:
                for index, values in enumerate(pending):
                    if session_lost is not None:
                        # Tuples after a lost session are reported with the error that lost it
                        failures += 1
                        results.append(BatchItemResult(index=index, error=session_lost))
                        continue
                    try:
                        rowcount = statement.execute(values)
                    except DatabaseError as error:
                        failures += 1
                        results.append(BatchItemResult(index=index, error=error))
                        if atomic:
                            error.batch_results = results
                            raise
                        if self.connection.broken:
                            session_lost = error
                        continue
                    results.append(BatchItemResult(index=index, rowcount=rowcount))
        except DatabaseError as error:
            if atomic:
                if not hasattr(error, 'batch_results'):
                    error.batch_results = results
                raise
            # The statement could not be prepared at all
            failures = len(pending)
            results = [BatchItemResult(index=index, error=error) for index in range(len(pending))]

        duration = time.monotonic() - start_time
        self.executor.logger.debug(
            f"Batch of {len(pending)} executed in {duration:.3f}s ({failures} failed)"
        )
        return results
