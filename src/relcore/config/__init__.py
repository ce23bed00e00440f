"""
Database configuration management.

This module handles relcore configuration:
- Connection, pool, query and retry settings
- YAML and environment loading
- Logging configuration
"""

from .db_config import (
    DEFAULT_CONFIG, DatabaseSettings, ConnectionSettings, PoolSettings,
    QuerySettings, RetrySettings, LoggingSettings,
    get_default_config, load_config, validate_config, parse_dsn,
)
from .logging_config import (
    setup_db_logging, get_db_logger, DatabaseLoggerAdapter, SensitiveDataFilter,
)

__all__ = [
    'DEFAULT_CONFIG',
    'DatabaseSettings',
    'ConnectionSettings',
    'PoolSettings',
    'QuerySettings',
    'RetrySettings',
    'LoggingSettings',
    'get_default_config',
    'load_config',
    'validate_config',
    'parse_dsn',
    'setup_db_logging',
    'get_db_logger',
    'DatabaseLoggerAdapter',
    'SensitiveDataFilter',
]
