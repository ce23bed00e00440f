"""Shared fixtures for relcore tests."""

from typing import Optional
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

from relcore import ConnectionManager, EntityMapping, Repository
from relcore.drivers.base import Driver

USERS_DDL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    age INTEGER
);
"""


class User(BaseModel):
    id: Optional[int] = None
    email: str
    name: str
    age: Optional[int] = None


class FakeDriver(Driver):
    """Driver double handing out MagicMock sessions."""

    name = 'fake'

    def __init__(self):
        super().__init__('fake.db')
        self.opened = []
        self.fail_connect = False
        self.disposed = False

    def connect(self):
        if self.fail_connect:
            raise OSError("connection refused")
        raw = MagicMock(name=f"session{len(self.opened) + 1}")
        self.opened.append(raw)
        return raw

    def begin(self, raw):
        raw.begin()

    def commit(self, raw):
        raw.commit()

    def rollback(self, raw):
        raw.rollback()

    def dispose(self):
        self.disposed = True


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def sqlite_dsn(tmp_path):
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def manager(sqlite_dsn):
    """Connection manager over a file-backed SQLite database with a users table."""
    db = ConnectionManager({
        'connection': {'dsn': sqlite_dsn},
        'pool': {'max_size': 4, 'min_idle': 1, 'acquire_timeout': 5.0},
    })
    db.execute_script(USERS_DDL)
    yield db
    db.close()


@pytest.fixture
def user_mapping():
    return EntityMapping.for_model(User, 'users')


@pytest.fixture
def users(manager, user_mapping):
    return Repository(manager, user_mapping)
