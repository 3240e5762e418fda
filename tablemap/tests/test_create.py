from __future__ import annotations

import pytest

from tablemap import ExecutionError, ParameterError, Settings, open_db, register_hook
from tablemap.config import NamingConfig, OrmConfig
from tablemap.tests.shapes import Note, Product, User


def test_create_single_writes_back_key(db):
    u = User(name="jinzhu", age=18)
    res = db.create(u)
    assert res.rows_affected == 1
    assert u.id == 1
    assert res.last_insert_id == 1
    # db default and timestamps are filled on the record
    assert u.email == "default@example.com"
    assert u.created_at > 0
    assert u.update_on > 0


def test_create_runs_before_create_hook(db):
    u = User(name="nobody")
    db.create(u)
    assert u.age == 20
    assert db.first(User, u.id).age == 20


def test_skip_hooks(db):
    u = User(name="raw")
    db.session(skip_hooks=True).create(u)
    assert u.age == 0
    assert db.first(User, u.id).age == 0


def test_hook_error_aborts_create(db):
    def reject(session, user):
        raise RuntimeError("rejected")

    register_hook(User, "before_create", reject)
    with pytest.raises(RuntimeError):
        db.create(User(name="x"))
    assert db.model(User).count() == 0


def test_after_create_sees_key(db):
    seen = []
    register_hook(User, "after_create", lambda session, user: seen.append(user.id))
    db.create([User(name="a"), User(name="b")])
    assert seen == [1, 2]


def test_batch_create_assigns_keys_in_order(db):
    people = [User(name=f"u{i}") for i in range(5)]
    res = db.create(people)
    assert res.rows_affected == 5
    assert [p.id for p in people] == [1, 2, 3, 4, 5]
    names = db.model(User).order("id").pluck("name")
    assert names == [f"u{i}" for i in range(5)]


def test_create_in_batches(db):
    people = [User(name=f"b{i}") for i in range(5)]
    res = db.create_in_batches(people, 2)
    assert res.rows_affected == 5
    assert [p.id for p in people] == [1, 2, 3, 4, 5]
    with pytest.raises(ParameterError):
        db.create_in_batches(people, 0)


def test_configured_batch_size(db_path):
    settings = Settings(naming=NamingConfig(table_prefix="t_"), orm=OrmConfig(create_batch_size=2))
    session = open_db(settings, dsn=db_path)
    try:
        session.auto_migrate(User)
        people = [User(name=f"c{i}") for i in range(3)]
        assert session.create(people).rows_affected == 3
        assert [p.id for p in people] == [1, 2, 3]
    finally:
        session.close()


def test_mixed_explicit_keys(db):
    people = [User(id=10, name="ten"), User(name="next")]
    db.create(people)
    assert people[1].id == 11
    assert db.first(User, 10).name == "ten"


def test_failed_batch_is_rolled_back(db):
    db.create(User(id=1, name="first"))
    with pytest.raises(ExecutionError):
        db.create([User(name="ok"), User(id=1, name="dup")])
    assert db.model(User).count() == 1


def test_select_restricts_inserted_columns(db):
    u = User(name="sel", age=30, member_number="M1")
    db.select("name", "age").create(u)
    row = db.model(User).where("id = ?", u.id).take(dict)
    assert row["name"] == "sel"
    assert row["age"] == 30
    assert row["member_number"] is None


def test_omit_restricts_inserted_columns(db):
    u = User(name="om", age=33)
    db.omit("age").create(u)
    row = db.table("t_users").where("id = ?", u.id).take(dict)
    assert row["age"] is None
    assert row["name"] == "om"


def test_create_from_mapping(db):
    res = db.model(User).create({"name": "map", "age": 0})
    assert res.rows_affected == 1
    row = db.model(User).where({"name": "map"}).first(dict)
    # no hooks and no timestamps for mappings; database defaults apply
    assert row["age"] == 0
    assert row["created_at"] is None
    assert row["email"] == "default@example.com"
    assert row["is_deleted"] == 0


def test_create_from_mapping_list(db):
    res = db.model(User).create([{"name": "m1"}, {"name": "m2", "age": 3}])
    assert res.rows_affected == 2
    assert db.model(User).count() == 2


def test_mapping_needs_a_table(db):
    with pytest.raises(ParameterError):
        db.create({"name": "nowhere"})


def test_mapping_with_unknown_key(db):
    with pytest.raises(ParameterError):
        db.model(User).create({"nickname": "x"})


def test_string_primary_key(db):
    p = Product(code="A1", price=9.5, in_stock=True)
    db.create(p)
    assert p.created_at is not None
    got = db.first(Product, {"code": "A1"})
    assert got.in_stock is True
    assert got.price == 9.5
    assert got.created_at == p.created_at


def test_create_rejects_mixed_shapes(db):
    with pytest.raises(ParameterError):
        db.create([User(name="a"), Note(body="b")])
