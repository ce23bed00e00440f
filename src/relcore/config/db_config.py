"""
Database configuration settings.

Defaults are kept in a nested dictionary. ``load_config`` layers a YAML file,
environment variables and explicit overrides on top, and validates the result
into pydantic models.
"""

import os
import copy
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from sqlalchemy.engine import make_url, URL
from sqlalchemy.exc import ArgumentError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'connection': {
        'dsn': 'sqlite:///:memory:',       # sqlite:///path.db or duckdb:///path.duckdb
        'options': {},                     # Driver keyword options (pragmas, memory_limit, ...)
    },
    'pool': {
        'max_size': 5,                     # Maximum number of connections in pool
        'min_idle': 1,                     # Idle connections kept open
        'acquire_timeout': 30.0,           # Seconds to wait for a free connection
        'shutdown_timeout': None,          # Seconds to wait for borrowers on shutdown (None = forever)
    },
    'query': {
        'timeout': None,                   # Per-statement timeout in seconds (None = no limit)
        'max_batch_size': 1000,            # Maximum tuples per batch submitted by repositories
        'slow_query_threshold': 1.0,       # Log statements slower than this (seconds)
    },
    'retry': {
        'attempts': 3,                     # Attempts for caller-controlled retries
        'delay': 0.5,                      # Initial delay between attempts in seconds
        'backoff': 2.0,                    # Delay multiplier per attempt
    },
    'logging': {
        'level': 'INFO',
        'file': None,                      # Optional log file path
        'console': False,                  # Also log to stdout
    },
}

# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    'RELCORE_DSN': ('connection', 'dsn', str),
    'RELCORE_POOL_MAX_SIZE': ('pool', 'max_size', int),
    'RELCORE_POOL_MIN_IDLE': ('pool', 'min_idle', int),
    'RELCORE_ACQUIRE_TIMEOUT': ('pool', 'acquire_timeout', float),
    'RELCORE_LOG_LEVEL': ('logging', 'level', str),
}


class ConnectionSettings(BaseModel):
    """Where to connect and with which driver options."""

    dsn: str = Field(..., description="Database URL")
    options: Dict[str, Any] = Field(default_factory=dict, description="Driver options")

    @field_validator('dsn')
    @classmethod
    def validate_dsn(cls, v):
        """Validate that the DSN parses as a database URL."""
        parse_dsn(v)
        return v


class PoolSettings(BaseModel):
    """Connection pool sizing."""

    max_size: int = Field(default=5, ge=1, description="Maximum connections")
    min_idle: int = Field(default=1, ge=0, description="Minimum idle connections")
    acquire_timeout: float = Field(default=30.0, gt=0, description="Acquire timeout in seconds")
    shutdown_timeout: Optional[float] = Field(default=None, ge=0, description="Drain timeout on shutdown")

    @model_validator(mode='after')
    def validate_floor(self):
        """Validate that the idle floor fits inside the pool."""
        if self.min_idle > self.max_size:
            raise ValueError('min_idle cannot exceed max_size')
        return self


class QuerySettings(BaseModel):
    """Statement execution settings."""

    timeout: Optional[float] = Field(default=None, gt=0)
    max_batch_size: int = Field(default=1000, ge=1)
    slow_query_threshold: float = Field(default=1.0, ge=0)


class RetrySettings(BaseModel):
    """Bounds for caller-controlled retries."""

    attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=0.5, ge=0)
    backoff: float = Field(default=2.0, ge=1.0)


class LoggingSettings(BaseModel):
    """Database logging settings."""

    level: str = Field(default='INFO')
    file: Optional[str] = None
    console: bool = False

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate the logging level name."""
        level = str(v).upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Unknown log level: {v}')
        return level


class DatabaseSettings(BaseModel):
    """Complete relcore configuration."""

    connection: ConnectionSettings
    pool: PoolSettings = Field(default_factory=PoolSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def url(self) -> URL:
        return parse_dsn(self.connection.dsn)

    @property
    def backend(self) -> str:
        return self.url.get_backend_name()


def parse_dsn(dsn: str) -> URL:
    """
    Parse a database URL.

    Raises:
        ValueError: If the DSN is not a valid URL
    """
    try:
        return make_url(dsn)
    except ArgumentError as e:
        raise ValueError(f"Invalid database URL: {e}") from e


def get_default_config() -> Dict[str, Any]:
    """Get a copy of the default configuration dictionary."""
    return copy.deepcopy(DEFAULT_CONFIG)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into ``base`` in place."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (section, key, cast) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == '':
            continue
        try:
            value = cast(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {var}: {raw!r}") from e
        overrides.setdefault(section, {})[key] = value
    return overrides


def validate_config(config: Dict[str, Any]) -> DatabaseSettings:
    """
    Validate a configuration dictionary.

    Returns:
        Validated settings

    Raises:
        ValueError: If any setting is invalid
    """
    try:
        return DatabaseSettings.model_validate(config)
    except ValidationError as e:
        raise ValueError(f"Database configuration validation failed: {e}") from e


def load_config(path: Optional[Union[str, Path]] = None,
                overrides: Optional[Dict[str, Any]] = None,
                environ: Optional[Dict[str, str]] = None) -> DatabaseSettings:
    """
    Build settings from defaults, a YAML file, the environment and overrides.

    The YAML file may hold the settings at top level or under a ``database`` key.

    Args:
        path: Optional YAML configuration file
        overrides: Nested dictionary applied last
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated settings
    """
    config = get_default_config()

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        with open(path, 'r') as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Configuration file must contain a mapping: {path}")
        if isinstance(file_config.get('database'), dict):
            file_config = file_config['database']
        deep_merge(config, file_config)
        logger.debug(f"Loaded database configuration from {path}")

    deep_merge(config, _env_overrides(environ))

    if overrides:
        deep_merge(config, overrides)

    return validate_config(config)
