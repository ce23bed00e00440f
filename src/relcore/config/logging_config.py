"""
Database logging configuration.

Sets up the ``relcore`` logger hierarchy and provides an adapter with helpers
for statement, transaction, pool and performance events.
"""

import re
import sys
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from .db_config import LoggingSettings

ROOT_LOGGER = 'relcore'


class SafeFormatter(logging.Formatter):
    """Formatter that provides default values for missing context fields."""

    def format(self, record):
        if not hasattr(record, 'database_context'):
            record.database_context = 'db'
        return super().format(record)


class SensitiveDataFilter(logging.Filter):
    """Logging filter that redacts credentials from messages."""

    PATTERNS = [
        # user:password@host in URLs
        (re.compile(r'(://[^:/@\s]+:)[^@\s]+@'), r'\1***@'),
        (re.compile(r'(password|passwd|pwd|token|secret)\s*[=:]\s*[^\s&;,]+', re.IGNORECASE),
         r'\1=***REDACTED***'),
    ]

    @classmethod
    def sanitize(cls, message: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.sanitize(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.sanitize(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self.sanitize(str(arg)) for arg in record.args)
        return True


def setup_db_logging(settings: Optional[LoggingSettings] = None) -> logging.Logger:
    """
    Setup database logging.

    Handlers are replaced on every call so repeated setup does not duplicate
    output. Without a file or console handler the logger propagates to the
    application's root configuration.

    Args:
        settings: Logging settings (defaults used when omitted)

    Returns:
        The configured ``relcore`` logger
    """
    settings = settings or LoggingSettings()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, settings.level))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    sensitive_filter = SensitiveDataFilter()

    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(SafeFormatter(
            '%(asctime)s.%(msecs)03d - [%(database_context)s] - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.addFilter(sensitive_filter)
        logger.addHandler(file_handler)

    if settings.console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(SafeFormatter(
            '%(asctime)s - DB - %(levelname)s - %(message)s',
            datefmt='%H:%M:%S'
        ))
        console_handler.addFilter(sensitive_filter)
        logger.addHandler(console_handler)

    # Prevent duplicate output when we own the handlers
    logger.propagate = not logger.handlers

    return logger


def log_query(logger: logging.Logger, query: str, params: Optional[tuple] = None,
              duration: Optional[float] = None) -> None:
    """Log a statement. Text and parameters only appear at DEBUG."""
    if logger.isEnabledFor(logging.DEBUG):
        message = f"Statement: {' '.join(query.split())}"
        if params:
            message += f" | params={params!r}"
        if duration is not None:
            message += f" | {duration:.3f}s"
        logger.debug(message)


def log_transaction(logger: logging.Logger, operation: str, success: bool,
                    duration: Optional[float] = None, error: Optional[str] = None) -> None:
    """Log a transaction outcome."""
    if success:
        message = f"Transaction '{operation}' completed successfully"
        if duration is not None:
            message += f" in {duration:.3f}s"
        logger.debug(message)
    else:
        message = f"Transaction '{operation}' rolled back"
        if error:
            message += f": {error}"
        logger.warning(message)


def log_connection_event(logger: logging.Logger, event: str, details: Optional[str] = None) -> None:
    """
    Log a connection pool event.

    Args:
        event: Event type ('acquired', 'released', 'created', 'closed', 'broken', 'error')
        details: Additional event details
    """
    message = f"Connection {event}"
    if details:
        message += f": {details}"
    if event == 'error':
        logger.error(message)
    elif event == 'broken':
        logger.warning(message)
    else:
        logger.debug(message)


def log_performance_metric(logger: logging.Logger, metric_name: str,
                           value: float, unit: str = '') -> None:
    """Log a performance metric at DEBUG."""
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Performance metric - {metric_name}: {value:.4f}{unit}")


class DatabaseLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds database context to log records.

    The ``database_context`` field is derived from the ``database`` entry of the
    adapter's extra dict (e.g. ``data/app.db`` -> ``app``).
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        database = self.extra.get('database')
        if database and database != ':memory:':
            context = Path(str(database)).stem
        else:
            context = database or 'db'

        extra = dict(kwargs.get('extra') or {})
        extra.setdefault('database_context', context)
        component = self.extra.get('component')
        if component:
            extra.setdefault('component', component)
        kwargs['extra'] = extra
        return msg, kwargs

    def query(self, query: str, params: Optional[tuple] = None, duration: Optional[float] = None) -> None:
        log_query(self.logger, query, params, duration)

    def transaction(self, operation: str, success: bool, duration: Optional[float] = None,
                    error: Optional[str] = None) -> None:
        log_transaction(self.logger, operation, success, duration, error)

    def connection_event(self, event: str, details: Optional[str] = None) -> None:
        log_connection_event(self.logger, event, details)

    def performance(self, metric_name: str, value: float, unit: str = '') -> None:
        log_performance_metric(self.logger, metric_name, value, unit)


def get_db_logger(component: str, database: Optional[str] = None) -> DatabaseLoggerAdapter:
    """Get an adapter for ``relcore.<component>``."""
    return DatabaseLoggerAdapter(
        logging.getLogger(f"{ROOT_LOGGER}.{component}"),
        {'component': component, 'database': database}
    )
