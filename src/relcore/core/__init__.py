"""
Core data-access components.

This module contains the building blocks for database operations:
- Connection pooling and the connection manager
- Statement, batch and transaction execution
- Error taxonomy and classification
- Generic repository implementation
"""

from .batch import BatchExecutor, BatchItemResult
from .base_repository import Repository
from .cancellation import CancelToken
from .classifier import ErrorClassifier
from .connection import ConnectionManager
from .errors import (
    ErrorKind, DatabaseError, TransientError, ConstraintViolation, AuthFailure,
    SyntaxOrSchemaError, ResourceExhausted, PoolExhausted, PoolClosed,
    TransactionAlreadyActive, TransactionAlreadyClosed, BatchShapeMismatch, NotFound,
)
from .executor import RowStream, StatementExecutor, tuple_row, dict_row
from .mapping import EntityMapping
from .pool import Connection, ConnectionPool, ConnectionState
from .retry import run_with_retry
from .transaction import Transaction, TransactionManager, TransactionState

__all__ = [
    "BatchExecutor", "BatchItemResult", "Repository", "CancelToken", "ErrorClassifier",
    "ConnectionManager", "ErrorKind", "DatabaseError", "TransientError",
    "ConstraintViolation", "AuthFailure", "SyntaxOrSchemaError", "ResourceExhausted",
    "PoolExhausted", "PoolClosed", "TransactionAlreadyActive", "TransactionAlreadyClosed",
    "BatchShapeMismatch", "NotFound", "RowStream", "StatementExecutor", "tuple_row",
    "dict_row", "EntityMapping", "Connection", "ConnectionPool", "ConnectionState",
    "run_with_retry", "Transaction", "TransactionManager", "TransactionState",
]
