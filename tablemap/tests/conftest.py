from __future__ import annotations

import pytest

from tablemap import Settings, clear_hooks, open_db, register_hook
from tablemap.config import NamingConfig
from tablemap.db import get_conn
from tablemap.tests.shapes import Note, Product, User, default_age


@pytest.fixture()
def settings():
    return Settings(naming=NamingConfig(table_prefix="t_"))


@pytest.fixture()
def db_path(tmp_path):
    return str(tmp_path / "tablemap_test.db")


@pytest.fixture()
def db(db_path, settings):
    session = open_db(settings, dsn=db_path)
    session.auto_migrate(User, Product, Note)
    yield session
    session.close()


@pytest.fixture()
def raw_conn(db_path):
    # Independent connection for assertions that bypass the session layer
    with get_conn(db_path) as conn:
        yield conn


@pytest.fixture(autouse=True)
def _hooks():
    clear_hooks()
    register_hook(User, "before_create", default_age)
    yield
    clear_hooks()


@pytest.fixture()
def users(db):
    people = [
        User(name="jinzhu", age=18),
        User(name="alice", age=20),
        User(name="bob", age=30),
        User(name="carol", age=0),
    ]
    db.create(people)
    return people
