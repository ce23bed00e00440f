"""
Database drivers.

Each driver adapts one database module to the capability contract in
``base.Driver``. ``create_driver`` picks the driver from a settings DSN.
"""

from typing import Any, Dict

from .base import Driver, StatementHandle
from .sqlite import SQLiteDriver
from ..config.db_config import DatabaseSettings, parse_dsn

__all__ = ['Driver', 'StatementHandle', 'SQLiteDriver', 'create_driver']


def create_driver(settings: DatabaseSettings) -> Driver:
    """
    Create the driver for ``settings.connection.dsn``.

    URL query parameters are passed to the driver as keyword options, with
    ``connection.options`` taking precedence.
    """
    url = parse_dsn(settings.connection.dsn)
    backend = url.get_backend_name()
    database = url.database or ':memory:'

    options: Dict[str, Any] = dict(url.query)
    options.update(settings.connection.options)

    if backend == 'sqlite':
        if 'busy_timeout' in options:
            options['busy_timeout'] = float(options['busy_timeout'])
        return SQLiteDriver(database, **options)
    if backend == 'duckdb':
        from .duckdb_driver import DuckDBDriver
        if 'read_only' in options and isinstance(options['read_only'], str):
            options['read_only'] = options['read_only'].lower() in ('1', 'true', 'yes')
        return DuckDBDriver(database, **options)

    raise ValueError(f"Unsupported database backend: {backend}")
