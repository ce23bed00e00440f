"""Integration tests for the connection manager."""

import pytest

from relcore import ConnectionManager, DatabaseSettings, PoolClosed, TransientError
from relcore.core.errors import ConstraintViolation, SyntaxOrSchemaError


class TestConstruction:
    """Test the accepted settings forms."""

    def test_dsn_string(self, sqlite_dsn):
        with ConnectionManager(sqlite_dsn) as db:
            assert db.driver.name == 'sqlite'
            assert isinstance(db.settings, DatabaseSettings)

    def test_defaults_use_shared_memory_database(self):
        with ConnectionManager() as db:
            db.execute("CREATE TABLE t (x INTEGER)")
            db.execute("INSERT INTO t VALUES (?)", (1,))
            with db.get_connection() as first, db.get_connection() as second:
                assert first is not second
                assert db.query("SELECT x FROM t", connection=second).fetchall() == [(1,)]

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            ConnectionManager({'pool': {'max_size': 0}})


class TestStatements:
    """Test statement helpers with automatic connection management."""

    def test_execute_query_fetch_modes(self, manager):
        assert manager.execute_query(
            "INSERT INTO users (email, name) VALUES (?, ?)", ('a@example.com', 'A'), fetch='none'
        ) == 1
        assert manager.execute_query("SELECT email FROM users", fetch='all') == [('a@example.com',)]
        assert manager.execute_query("SELECT name FROM users WHERE email = ?",
                                     ('a@example.com',), fetch='one') == ('A',)
        with pytest.raises(ValueError):
            manager.execute_query("SELECT 1", fetch='many')

    def test_insert_returns_id(self, manager):
        user_id = manager.insert("INSERT INTO users (email, name) VALUES (?, ?)",
                                 ('a@example.com', 'A'), id_column='id')
        assert manager.execute_query("SELECT id FROM users", fetch='one') == (user_id,)

    def test_query_releases_connection_when_exhausted(self, manager):
        manager.execute("INSERT INTO users (email, name) VALUES (?, ?)", ('a@example.com', 'A'))
        rows = manager.query("SELECT email FROM users")
        assert manager.pool.get_stats()['active_connections'] == 1
        assert rows.fetchall() == [('a@example.com',)]
        assert manager.pool.get_stats()['active_connections'] == 0

    def test_query_start_failure_releases_connection(self, manager):
        with pytest.raises(SyntaxOrSchemaError):
            manager.query("SELECT * FROM nowhere")
        assert manager.pool.get_stats()['active_connections'] == 0

    def test_execute_transaction_is_atomic(self, manager):
        counts = manager.execute_transaction([
            ("INSERT INTO users (email, name) VALUES (?, ?)", ('a@example.com', 'A')),
            ("INSERT INTO users (email, name) VALUES (?, ?)", ('b@example.com', 'B')),
            ("UPDATE users SET age = ?", (30,)),
        ])
        assert counts == [1, 1, 2]

        with pytest.raises(ConstraintViolation):
            manager.execute_transaction([
                ("INSERT INTO users (email, name) VALUES (?, ?)", ('c@example.com', 'C')),
                ("INSERT INTO users (email, name) VALUES (?, ?)", ('a@example.com', 'Dup')),
            ])
        assert manager.execute_query("SELECT COUNT(*) FROM users", fetch='one') == (2,)

    def test_execute_script(self, manager):
        count = manager.execute_script("""
            CREATE TABLE tags (name TEXT PRIMARY KEY);
            INSERT INTO tags VALUES ('a;b');
            -- comment; with semicolon
            INSERT INTO tags VALUES ('c');
        """)
        assert count == 3
        assert manager.execute_query("SELECT name FROM tags ORDER BY name") == [('a;b',), ('c',)]

    def test_execute_batch(self, manager):
        results = manager.execute_batch(
            "INSERT INTO users (email, name) VALUES (?, ?)",
            [('a@example.com', 'A'), ('a@example.com', 'Dup'), ('b@example.com', 'B')],
        )
        assert [result.ok for result in results] == [True, False, True]

    def test_batch_discards_unsubmitted_tuples(self, manager):
        with manager.batch("INSERT INTO users (email, name) VALUES (?, ?)") as batch:
            batch.add_to_batch(('a@example.com', 'A'))
        assert len(batch) == 0
        assert manager.execute_query("SELECT COUNT(*) FROM users", fetch='one') == (0,)


class TestTransactionsAndRetry:
    """Test transaction helpers and caller-controlled retry."""

    def test_transaction_commits_on_exit(self, manager):
        with manager.transaction() as tx:
            manager.execute("INSERT INTO users (email, name) VALUES (?, ?)",
                            ('a@example.com', 'A'), connection=tx.connection)
        assert manager.execute_query("SELECT COUNT(*) FROM users", fetch='one') == (1,)

    def test_explicit_rollback_inside_transaction(self, manager):
        with manager.transaction() as tx:
            manager.execute("INSERT INTO users (email, name) VALUES (?, ?)",
                            ('a@example.com', 'A'), connection=tx.connection)
            tx.rollback()
        assert manager.execute_query("SELECT COUNT(*) FROM users", fetch='one') == (0,)

    def test_retry_uses_settings(self, manager):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise TransientError("connection lost")
            return 'done'

        assert manager.retry(flaky, sleep=lambda seconds: None) == 'done'
        assert len(attempts) == 2


class TestLifecycle:
    """Test health checks and shutdown."""

    def test_health_check(self, manager):
        health = manager.health_check()
        assert health['status'] == 'healthy'
        assert health['driver'] == 'sqlite'

    def test_performance_stats(self, manager):
        manager.execute_query("SELECT 1")
        stats = manager.get_performance_stats()
        assert stats['executor']['statements_executed'] >= 1
        assert stats['pool_stats']['max_size'] == 4

    def test_closed_manager(self, manager):
        manager.close()
        manager.close()
        with pytest.raises(PoolClosed):
            manager.execute("SELECT 1")
        assert manager.health_check()['status'] == 'unhealthy'
