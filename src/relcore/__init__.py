"""
relcore: generic relational data-access core.

This package provides a clean data-access layer over SQLite and DuckDB:

Key components:
- Bounded connection pool with scoped borrowing
- Parameterized statements, lazy row streams and batches
- Explicit transactions with commit/rollback scopes
- Closed error taxonomy separating transient from fatal failures
- Generic repository over injected entity mappings
- Centralized configuration and logging
"""

from .core import *
from .core import __all__ as _core_all
from .config import load_config, validate_config, DatabaseSettings, setup_db_logging
from .drivers import Driver, SQLiteDriver, create_driver

__version__ = "1.0.0"
__all__ = _core_all + [
    "load_config",
    "validate_config",
    "DatabaseSettings",
    "setup_db_logging",
    "Driver",
    "SQLiteDriver",
    "create_driver",
]
