"""Unit tests for configuration loading and driver selection."""

import pytest
import yaml

from relcore.config.db_config import (
    DEFAULT_CONFIG, DatabaseSettings, get_default_config, load_config, validate_config, parse_dsn,
)
from relcore.drivers import create_driver, SQLiteDriver


class TestDefaults:
    """Test default configuration."""

    def test_default_config_is_a_copy(self):
        config = get_default_config()
        config['pool']['max_size'] = 99
        assert DEFAULT_CONFIG['pool']['max_size'] == 5

    def test_defaults_validate(self):
        settings = validate_config(get_default_config())
        assert isinstance(settings, DatabaseSettings)
        assert settings.backend == 'sqlite'
        assert settings.pool.max_size == 5
        assert settings.query.max_batch_size == 1000
        assert settings.logging.level == 'INFO'


class TestValidation:
    """Test rejection of invalid settings."""

    @pytest.mark.parametrize("section,values", [
        ('pool', {'max_size': 0}),
        ('pool', {'max_size': 2, 'min_idle': 3}),
        ('pool', {'acquire_timeout': 0}),
        ('query', {'max_batch_size': 0}),
        ('retry', {'attempts': 0}),
        ('logging', {'level': 'VERBOSE'}),
        ('connection', {'dsn': 'not a url'}),
    ])
    def test_invalid_values(self, section, values):
        config = get_default_config()
        config[section].update(values)
        with pytest.raises(ValueError):
            validate_config(config)

    def test_level_is_normalized(self):
        config = get_default_config()
        config['logging']['level'] = 'debug'
        assert validate_config(config).logging.level == 'DEBUG'

    def test_parse_dsn(self):
        url = parse_dsn('duckdb:///data/app.duckdb')
        assert url.get_backend_name() == 'duckdb'
        assert url.database == 'data/app.duckdb'
        with pytest.raises(ValueError):
            parse_dsn('::')


class TestLoadConfig:
    """Test layering of file, environment and overrides."""

    def test_yaml_file_under_database_key(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({
            'database': {
                'connection': {'dsn': 'sqlite:///app.db'},
                'pool': {'max_size': 8},
            }
        }))
        settings = load_config(path, environ={})
        assert settings.connection.dsn == 'sqlite:///app.db'
        assert settings.pool.max_size == 8
        assert settings.pool.min_idle == 1

    def test_yaml_file_at_top_level(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("query:\n  timeout: 2.5\n")
        assert load_config(path, environ={}).query.timeout == 2.5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / 'missing.yaml', environ={})

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError):
            load_config(path, environ={})

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("pool:\n  max_size: 8\n")
        environ = {
            'RELCORE_DSN': 'duckdb:///:memory:',
            'RELCORE_POOL_MAX_SIZE': '12',
            'RELCORE_ACQUIRE_TIMEOUT': '2.5',
            'RELCORE_LOG_LEVEL': 'warning',
        }
        settings = load_config(path, environ=environ)
        assert settings.backend == 'duckdb'
        assert settings.pool.max_size == 12
        assert settings.pool.acquire_timeout == 2.5
        assert settings.logging.level == 'WARNING'

    def test_invalid_environment_value(self):
        with pytest.raises(ValueError, match='RELCORE_POOL_MAX_SIZE'):
            load_config(environ={'RELCORE_POOL_MAX_SIZE': 'many'})

    def test_explicit_overrides_win(self):
        settings = load_config(
            overrides={'pool': {'max_size': 3}},
            environ={'RELCORE_POOL_MAX_SIZE': '12'},
        )
        assert settings.pool.max_size == 3


class TestCreateDriver:
    """Test driver selection from the DSN."""

    def test_sqlite_with_url_options(self, tmp_path):
        settings = load_config(
            overrides={'connection': {'dsn': f"sqlite:///{tmp_path / 'a.db'}?busy_timeout=2"}},
            environ={},
        )
        driver = create_driver(settings)
        assert isinstance(driver, SQLiteDriver)
        assert driver.busy_timeout == 2.0
        assert driver.database == str(tmp_path / 'a.db')

    def test_options_override_url(self):
        settings = load_config(overrides={'connection': {
            'dsn': 'sqlite:///:memory:?busy_timeout=2',
            'options': {'busy_timeout': 7, 'pragmas': {'cache_size': '-2000'}},
        }}, environ={})
        driver = create_driver(settings)
        assert driver.busy_timeout == 7.0
        assert driver.pragmas['cache_size'] == '-2000'
        assert 'journal_mode' not in driver.pragmas

    def test_invalid_pragma_rejected(self):
        with pytest.raises(ValueError):
            SQLiteDriver(':memory:', pragmas={'journal_mode': 'WAL; DROP TABLE x'})

    def test_duckdb(self):
        from relcore.drivers.duckdb_driver import DuckDBDriver
        settings = load_config(overrides={'connection': {
            'dsn': 'duckdb:///:memory:?read_only=false&threads=2',
        }}, environ={})
        driver = create_driver(settings)
        assert isinstance(driver, DuckDBDriver)
        assert driver.read_only is False
        assert driver.config['threads'] == 2
        assert driver.supports_returning

    def test_unsupported_backend(self):
        settings = load_config(overrides={'connection': {'dsn': 'postgresql://u:p@localhost/app'}}, environ={})
        with pytest.raises(ValueError, match='Unsupported'):
            create_driver(settings)
