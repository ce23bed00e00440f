"""
Error classifier.

Normalizes raw driver failures into the closed ErrorKind set before they reach
callers. Classification is attempted in a fixed order, the first match wins:

1. Errors that are already a DatabaseError keep their kind
2. Custom rules supplied by the caller
3. SQLSTATE codes exposed by the driver (``sqlstate`` / ``pgcode``)
4. Driver exception class names (DuckDB raises fine-grained types)
5. Message patterns (SQLite reports most failures as OperationalError)
6. DB-API 2.0 base classes and builtin exception types
7. Fallback: SYNTAX_OR_SCHEMA, which is never retried
"""

import re
import logging
from typing import Callable, List, Optional, Tuple, Pattern

from .errors import DatabaseError, ErrorKind, error_for

logger = logging.getLogger(__name__)

# A rule returns a kind when it recognises the exception, None otherwise
ClassificationRule = Callable[[BaseException], Optional[ErrorKind]]


# SQLSTATE class (first two characters) -> kind
SQLSTATE_CLASSES = {
    '08': ErrorKind.TRANSIENT,           # connection exception
    '40': ErrorKind.TRANSIENT,           # serialization failure / deadlock
    '57': ErrorKind.TRANSIENT,           # operator intervention (cancel, shutdown)
    '23': ErrorKind.CONSTRAINT_VIOLATION,
    '28': ErrorKind.AUTH_FAILURE,        # invalid authorization specification
    '42': ErrorKind.SYNTAX_OR_SCHEMA,    # syntax error or access rule violation
    '3D': ErrorKind.SYNTAX_OR_SCHEMA,    # invalid catalog name
    '3F': ErrorKind.SYNTAX_OR_SCHEMA,    # invalid schema name
    '53': ErrorKind.RESOURCE_EXHAUSTED,  # insufficient resources
    '54': ErrorKind.RESOURCE_EXHAUSTED,  # program limit exceeded
}

# Exact SQLSTATE codes that override their class
SQLSTATE_CODES = {
    '42501': ErrorKind.AUTH_FAILURE,     # insufficient privilege
}

# Driver exception class names -> kind, checked along the MRO
EXCEPTION_NAMES = {
    'ConstraintException': ErrorKind.CONSTRAINT_VIOLATION,
    'IntegrityError': ErrorKind.CONSTRAINT_VIOLATION,
    'CatalogException': ErrorKind.SYNTAX_OR_SCHEMA,
    'ParserException': ErrorKind.SYNTAX_OR_SCHEMA,
    'BinderException': ErrorKind.SYNTAX_OR_SCHEMA,
    'SyntaxException': ErrorKind.SYNTAX_OR_SCHEMA,
    'ConversionException': ErrorKind.SYNTAX_OR_SCHEMA,
    'InvalidInputException': ErrorKind.SYNTAX_OR_SCHEMA,
    'ConnectionException': ErrorKind.TRANSIENT,
    'IOException': ErrorKind.TRANSIENT,
    'InterruptException': ErrorKind.TRANSIENT,
    'TransactionException': ErrorKind.TRANSIENT,
    'OutOfMemoryException': ErrorKind.RESOURCE_EXHAUSTED,
    'PermissionException': ErrorKind.AUTH_FAILURE,
}

MESSAGE_PATTERNS: List[Tuple[Pattern[str], ErrorKind]] = [
    (re.compile(p, re.IGNORECASE), kind) for p, kind in [
        (r'constraint failed|constraint violation|duplicate key|violates .* constraint', ErrorKind.CONSTRAINT_VIOLATION),
        (r'authenticat|password|access denied|not authorized|permission denied', ErrorKind.AUTH_FAILURE),
        (r'database is locked|database table is locked|too many|out of memory|disk is full|busy', ErrorKind.RESOURCE_EXHAUSTED),
        (r'interrupted|timed? ?out|connection (reset|refused|lost|closed)|disk i/o error|unable to open database|server closed', ErrorKind.TRANSIENT),
        (r'syntax error|no such (table|column|function)|has no column|does not exist|incorrect number of bindings|error binding parameter|unrecognized token', ErrorKind.SYNTAX_OR_SCHEMA),
    ]
]

# DB-API 2.0 base classes -> kind, used only when nothing more specific matched
DBAPI_NAMES = {
    'ProgrammingError': ErrorKind.SYNTAX_OR_SCHEMA,
    'NotSupportedError': ErrorKind.SYNTAX_OR_SCHEMA,
    'DataError': ErrorKind.SYNTAX_OR_SCHEMA,
    'OperationalError': ErrorKind.TRANSIENT,
    'InterfaceError': ErrorKind.TRANSIENT,
    'InternalError': ErrorKind.TRANSIENT,
}


class ErrorClassifier:
    """
    Maps raw driver failures into the closed ErrorKind set.

    Args:
        rules: Extra rules evaluated before the built-in ones
        default_kind: Kind used when nothing matches
    """

    def __init__(self, rules: Optional[List[ClassificationRule]] = None,
                 default_kind: ErrorKind = ErrorKind.SYNTAX_OR_SCHEMA):
        self.rules = list(rules or [])
        self.default_kind = default_kind

    def add_rule(self, rule: ClassificationRule) -> None:
        """Register a rule evaluated before the built-in ones."""
        self.rules.append(rule)

    def classify(self, exc: BaseException) -> ErrorKind:
        """Return the kind for ``exc``."""
        if isinstance(exc, DatabaseError):
            return exc.kind

        for rule in self.rules:
            kind = rule(exc)
            if kind is not None:
                return kind

        kind = self._by_sqlstate(exc)
        if kind is None:
            kind = self._by_name(exc, EXCEPTION_NAMES)
        if kind is None:
            kind = self._by_message(exc)
        if kind is None:
            kind = self._by_name(exc, DBAPI_NAMES)
        if kind is None:
            kind = self._by_builtin(exc)
        if kind is None:
            logger.debug(f"Unrecognised driver error {type(exc).__name__}, using {self.default_kind.value}")
            kind = self.default_kind
        return kind

    def wrap(self, exc: BaseException, statement: Optional[str] = None) -> DatabaseError:
        """
        Wrap ``exc`` into the DatabaseError subclass for its kind.

        Already-classified errors are returned unchanged.
        """
        if isinstance(exc, DatabaseError):
            if exc.statement is None and statement is not None:
                exc.statement = statement
            return exc

        kind = self.classify(exc)
        message = str(exc) or type(exc).__name__
        return error_for(kind, message, statement=statement, original=exc)

    @staticmethod
    def _by_sqlstate(exc: BaseException) -> Optional[ErrorKind]:
        code = getattr(exc, 'sqlstate', None) or getattr(exc, 'pgcode', None)
        if not isinstance(code, str) or len(code) < 2:
            return None
        code = code.upper()
        if code in SQLSTATE_CODES:
            return SQLSTATE_CODES[code]
        return SQLSTATE_CLASSES.get(code[:2])

    @staticmethod
    def _by_name(exc: BaseException, table: dict) -> Optional[ErrorKind]:
        for klass in type(exc).__mro__:
            kind = table.get(klass.__name__)
            if kind is not None:
                return kind
        return None

    @staticmethod
    def _by_message(exc: BaseException) -> Optional[ErrorKind]:
        message = str(exc)
        if not message:
            return None
        for pattern, kind in MESSAGE_PATTERNS:
            if pattern.search(message):
                return kind
        return None

    @staticmethod
    def _by_builtin(exc: BaseException) -> Optional[ErrorKind]:
        if isinstance(exc, MemoryError):
            return ErrorKind.RESOURCE_EXHAUSTED
        if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
            return ErrorKind.TRANSIENT
        if isinstance(exc, (TypeError, ValueError)):
            return ErrorKind.SYNTAX_OR_SCHEMA
        return None
