"""Integration tests for the generic repository on SQLite."""

import threading

import pytest

from relcore import (
    ConnectionManager, ConstraintViolation, EntityMapping, NotFound, Repository, RowStream,
    TransactionAlreadyClosed,
)

from conftest import USERS_DDL, User


def _user(n, **kwargs):
    return User(email=f"user{n}@example.com", name=f"User {n}", **kwargs)


class TestCreateAndFind:
    """Test inserts and lookups."""

    def test_find_by_id_returns_created_entity(self, users):
        user = _user(1, age=30)
        user_id = users.create(user)

        assert isinstance(user_id, int)
        assert user.id == user_id
        assert users.find_by_id(user_id) == user

    def test_find_absent_returns_none(self, users):
        assert users.find_by_id(12345) is None

    def test_create_with_caller_assigned_id(self, users):
        user = _user(1, id=500)
        assert users.create(user) == 500
        assert users.find_by_id(500).email == "user1@example.com"

    def test_duplicate_unique_field(self, users):
        first = _user(1)
        users.create(first)

        with pytest.raises(ConstraintViolation):
            users.create(User(email=first.email, name="Impostor"))

        assert users.count() == 1
        assert users.find_by_id(first.id).name == "User 1"

    def test_find_all_streams_in_id_order(self, users):
        created = [_user(n) for n in range(3)]
        for user in created:
            users.create(user)

        stream = users.find_all()
        assert isinstance(stream, RowStream)
        assert list(stream) == created
        assert stream.closed

    def test_abandoned_find_all_releases_connection(self, users, manager):
        for n in range(3):
            users.create(_user(n))

        with users.find_all() as stream:
            next(stream)

        assert manager.pool.get_stats()['active_connections'] == 0

    def test_count_and_exists(self, users):
        user = _user(1)
        users.create(user)
        assert users.count() == 1
        assert users.exists(user.id)
        assert not users.exists(user.id + 1)


class TestUpdateAndDelete:
    """Test replacement and removal."""

    def test_update_replaces_row(self, users):
        user = _user(1, age=20)
        users.create(user)

        user.name = "Renamed"
        user.age = None
        users.update(user)

        assert users.find_by_id(user.id) == user

    def test_update_absent_raises_not_found(self, users):
        with pytest.raises(NotFound):
            users.update(_user(1, id=999))

    def test_update_without_id_raises_not_found(self, users):
        with pytest.raises(NotFound):
            users.update(_user(1))

    def test_delete_is_idempotent(self, users):
        user = _user(1)
        users.create(user)

        assert users.delete(user.id) is True
        assert users.delete(user.id) is False
        assert users.find_by_id(user.id) is None


class TestCreateMany:
    """Test batched inserts."""

    def test_create_many_reports_each_entity(self, users):
        entities = [_user(n) for n in range(5)]
        results = users.create_many(entities)

        assert [result.index for result in results] == [0, 1, 2, 3, 4]
        assert all(result.ok for result in results)
        assert users.count() == 5

    def test_create_many_chunks_by_max_batch_size(self, sqlite_dsn, user_mapping):
        with ConnectionManager({
            'connection': {'dsn': sqlite_dsn},
            'query': {'max_batch_size': 2},
        }) as manager:
            manager.execute_script(USERS_DDL)
            repo = Repository(manager, user_mapping)
            entities = [_user(n) for n in range(5)]
            entities[3] = User(email=entities[0].email, name="Duplicate")

            results = repo.create_many(entities)

            assert [result.index for result in results] == [0, 1, 2, 3, 4]
            assert [result.ok for result in results] == [True, True, True, False, True]
            assert isinstance(results[3].error, ConstraintViolation)
            assert repo.count() == 4

    def test_create_many_rejects_mixed_ids(self, users):
        with pytest.raises(ValueError):
            users.create_many([_user(1, id=1), _user(2)])

    def test_create_many_empty(self, users):
        assert users.create_many([]) == []


class TestTransactions:
    """Test repositories bound to transactions."""

    def test_error_after_updates_leaves_neither_visible(self, users, manager):
        first, second = _user(1), _user(2)
        users.create(first)
        users.create(second)

        def work(tx):
            bound = users.using(tx)
            bound.update(first.model_copy(update={'name': 'Changed 1'}))
            bound.update(second.model_copy(update={'name': 'Changed 2'}))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            manager.with_transaction(work)

        assert users.find_by_id(first.id).name == "User 1"
        assert users.find_by_id(second.id).name == "User 2"

    def test_with_transaction_commits(self, users, manager):
        def work(tx):
            bound = users.using(tx)
            return [bound.create(_user(1)), bound.create(_user(2))]

        ids = manager.with_transaction(work)
        assert [user.id for user in users.find_all()] == ids

    def test_failing_statement_rolls_back_transaction(self, users, manager):
        existing = _user(1)
        users.create(existing)
        before = list(users.find_all())

        with pytest.raises(ConstraintViolation):
            with manager.transaction() as tx:
                bound = users.using(tx)
                bound.create(_user(2))
                bound.create(User(email=existing.email, name="Duplicate"))

        assert list(users.find_all()) == before

    def test_writes_after_caught_error_are_refused(self, users, manager):
        existing = _user(1)
        users.create(existing)

        with pytest.raises(TransactionAlreadyClosed):
            with manager.transaction() as tx:
                bound = users.using(tx)
                bound.create(_user(2))
                with pytest.raises(ConstraintViolation):
                    bound.create(User(email=existing.email, name="Duplicate"))
                bound.create(_user(3))

        assert [user.email for user in users.find_all()] == [existing.email]

    def test_caught_error_fails_commit_on_exit(self, users, manager):
        existing = _user(1)
        users.create(existing)

        with pytest.raises(TransactionAlreadyClosed):
            with manager.transaction() as tx:
                bound = users.using(tx)
                bound.create(_user(2))
                try:
                    bound.create(User(email=existing.email, name="Duplicate"))
                except ConstraintViolation:
                    pass

        assert users.count() == 1
        assert manager.health_check()['status'] == 'healthy'

    def test_not_found_inside_transaction_rolls_back(self, users, manager):
        user = _user(1)
        users.create(user)

        with pytest.raises(NotFound):
            with manager.transaction() as tx:
                bound = users.using(tx)
                bound.delete(user.id)
                bound.update(_user(2, id=999))

        assert users.exists(user.id)

    def test_using_connection(self, users, manager):
        with manager.get_connection() as conn:
            bound = users.using(conn)
            assert bound.connection is conn
            bound.create(_user(1))
            assert bound.count() == 1
        assert users.connection is None


class TestRepositoryConcurrency:
    """Test independent operations from several threads."""

    def test_concurrent_creates(self, users):
        errors = []

        def create_batch(worker):
            try:
                for n in range(10):
                    users.create(_user(worker * 100 + n))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=create_batch, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30.0)

        assert errors == []
        assert users.count() == 40


class TestMappingAndStats:
    """Test mapping validation and repository statistics."""

    def test_mapping_rejects_unsafe_identifiers(self):
        with pytest.raises(ValueError):
            EntityMapping.for_model(User, 'users; DROP TABLE users')

    def test_mapping_requires_id_column(self):
        with pytest.raises(ValueError):
            EntityMapping.for_model(User, 'users', id_column='user_id')

    def test_mapping_with_functions(self, manager):
        mapping = EntityMapping(
            table='users',
            columns=('id', 'email', 'name', 'age'),
            to_row=lambda u: {'id': u['id'], 'email': u['email'], 'name': u['name'], 'age': u.get('age')},
            from_row=dict,
            get_id=lambda u: u['id'],
            set_id=lambda u, value: u.__setitem__('id', value),
        )
        repo = Repository(manager, mapping)
        record = {'id': None, 'email': 'plain@example.com', 'name': 'Plain'}
        record_id = repo.create(record)

        assert record['id'] == record_id
        assert repo.find_by_id(record_id) == {
            'id': record_id, 'email': 'plain@example.com', 'name': 'Plain', 'age': None,
        }

    def test_health_check_and_stats(self, users):
        users.create(_user(1))
        health = users.health_check()
        assert health['status'] == 'healthy'
        assert health['record_count'] == 1

        stats = users.get_performance_stats()
        assert stats['table_name'] == 'users'
        assert stats['operations_executed'] >= 2

    def test_health_check_reports_missing_table(self, manager):
        repo = Repository(manager, EntityMapping.for_model(User, 'ghosts'))
        health = repo.health_check()
        assert health['status'] == 'unhealthy'
        assert 'ghosts' in health['error']
