"""
Error taxonomy for the relcore data-access layer.

Every failure that leaves the core is one of the classes below. Driver
exceptions are never surfaced raw: the ErrorClassifier wraps them into the
matching subclass and keeps the original as ``__cause__``.
"""

from enum import Enum
from typing import Optional, Dict, Type, Any


class ErrorKind(str, Enum):
    """Closed set of error kinds."""
    TRANSIENT = "transient"
    CONSTRAINT_VIOLATION = "constraint_violation"
    AUTH_FAILURE = "auth_failure"
    SYNTAX_OR_SCHEMA = "syntax_or_schema"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    POOL_EXHAUSTED = "pool_exhausted"
    POOL_CLOSED = "pool_closed"
    TRANSACTION_ALREADY_ACTIVE = "transaction_already_active"
    TRANSACTION_ALREADY_CLOSED = "transaction_already_closed"
    BATCH_SHAPE_MISMATCH = "batch_shape_mismatch"
    NOT_FOUND = "not_found"

    @property
    def retryable(self) -> bool:
        """Whether a caller may retry with a fresh connection."""
        return self in (ErrorKind.TRANSIENT, ErrorKind.RESOURCE_EXHAUSTED)

    @property
    def breaks_connection(self) -> bool:
        """Whether the session that produced the error can no longer be trusted."""
        return self in (ErrorKind.TRANSIENT, ErrorKind.AUTH_FAILURE, ErrorKind.SYNTAX_OR_SCHEMA)


# Kinds that come out of the store rather than the core itself
DRIVER_KINDS = (
    ErrorKind.TRANSIENT,
    ErrorKind.CONSTRAINT_VIOLATION,
    ErrorKind.AUTH_FAILURE,
    ErrorKind.SYNTAX_OR_SCHEMA,
    ErrorKind.RESOURCE_EXHAUSTED,
)


class DatabaseError(Exception):
    """
    Base class for all relcore errors.

    Attributes:
        kind: Taxonomy kind of the failure
        message: Message from the store (or the core for core-level errors)
        statement: SQL template that was running, if any
        original: Underlying driver exception, if any
    """

    kind: ErrorKind = ErrorKind.SYNTAX_OR_SCHEMA

    def __init__(self, message: str, *, statement: Optional[str] = None,
                 original: Optional[BaseException] = None):
        self.message = message
        self.statement = statement
        self.original = original
        super().__init__(message)
        if original is not None:
            self.__cause__ = original

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class TransientError(DatabaseError):
    """Connectivity loss, timeout or cancellation. Safe to retry on a new connection."""
    kind = ErrorKind.TRANSIENT


class ConstraintViolation(DatabaseError):
    """Uniqueness, foreign-key, not-null or check constraint failure."""
    kind = ErrorKind.CONSTRAINT_VIOLATION


class AuthFailure(DatabaseError):
    """Bad credentials or missing privileges."""
    kind = ErrorKind.AUTH_FAILURE


class SyntaxOrSchemaError(DatabaseError):
    """Malformed statement, missing table or column, bad binding."""
    kind = ErrorKind.SYNTAX_OR_SCHEMA


class ResourceExhausted(DatabaseError):
    """Store-side limits (locks, memory, statement limits). Retry after backoff."""
    kind = ErrorKind.RESOURCE_EXHAUSTED


class PoolExhausted(DatabaseError):
    """No connection became available within the acquire timeout."""
    kind = ErrorKind.POOL_EXHAUSTED


class PoolClosed(DatabaseError):
    """The pool is shutting down or already shut down."""
    kind = ErrorKind.POOL_CLOSED


class TransactionAlreadyActive(DatabaseError):
    """A transaction is already active on the connection."""
    kind = ErrorKind.TRANSACTION_ALREADY_ACTIVE


class TransactionAlreadyClosed(DatabaseError):
    """The transaction was already committed or rolled back."""
    kind = ErrorKind.TRANSACTION_ALREADY_CLOSED


class BatchShapeMismatch(DatabaseError):
    """A batch tuple does not match the statement shape."""
    kind = ErrorKind.BATCH_SHAPE_MISMATCH


class NotFound(DatabaseError):
    """An update matched no rows."""
    kind = ErrorKind.NOT_FOUND


ERROR_TYPES: Dict[ErrorKind, Type[DatabaseError]] = {
    cls.kind: cls for cls in (
        TransientError, ConstraintViolation, AuthFailure, SyntaxOrSchemaError,
        ResourceExhausted, PoolExhausted, PoolClosed, TransactionAlreadyActive,
        TransactionAlreadyClosed, BatchShapeMismatch, NotFound,
    )
}


def error_for(kind: ErrorKind, message: str, **kwargs: Any) -> DatabaseError:
    """Build the exception class that corresponds to ``kind``."""
    return ERROR_TYPES[kind](message, **kwargs)
