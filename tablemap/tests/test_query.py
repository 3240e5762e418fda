from __future__ import annotations

import pytest

from tablemap import ParameterError, RecordNotFound
from tablemap.tests.shapes import User


class TestFetchOne:
    def test_first_last_take(self, db, users):
        assert db.first(User).name == "jinzhu"
        assert db.last(User).name == "carol"
        assert db.take(User).name in {u.name for u in users}

    def test_not_found(self, db):
        with pytest.raises(RecordNotFound):
            db.first(User)
        with pytest.raises(RecordNotFound):
            db.model(User).take()

    def test_by_primary_key(self, db, users):
        assert db.first(User, 2).name == "alice"
        with pytest.raises(RecordNotFound):
            db.first(User, 99)

    def test_fill_instance(self, db, users):
        u = User()
        got = db.first(u)
        assert got is u
        assert u.id == 1
        assert u.name == "jinzhu"

    def test_model_first_returns_records(self, db, users):
        assert isinstance(db.model(User).first(), User)

    def test_model_to_mapping(self, db, users):
        row = db.model(User).first(dict)
        assert row["name"] == "jinzhu"
        assert set(row) >= {"id", "name", "email", "age"}

    def test_first_on_bare_table_needs_model(self, db, users):
        with pytest.raises(ParameterError):
            db.table("t_users").first()
        assert db.table("t_users").take(dict)["id"] in {1, 2, 3, 4}

    def test_model_record_scopes_by_key(self, db, users):
        row = db.model(users[2]).first(dict)
        assert row["name"] == "bob"


class TestFind:
    def test_find_all(self, db, users):
        assert len(db.find(User)) == 4

    def test_find_empty(self, db):
        assert db.find(User) == []

    def test_key_list(self, db, users):
        found = db.find(User, [1, 3])
        assert [u.name for u in found] == ["jinzhu", "bob"]

    def test_string_conditions(self, db, users):
        assert db.where("name = ?", "bob").first(User).age == 30
        assert len(db.where("name <> ?", "bob").find(User)) == 3
        assert len(db.where("name IN ?", ["jinzhu", "carol"]).find(User)) == 2
        assert len(db.where("name LIKE ?", "%o%").find(User)) == 2
        assert len(db.where("name = ? AND age >= ?", "jinzhu", 18).find(User)) == 1
        assert len(db.where("age BETWEEN ? AND ?", 19, 25).find(User)) == 2

    def test_or_is_grouped(self, db, users):
        db.delete(users[1])
        # the soft-delete scope must not be absorbed by the OR
        found = db.where("name = ? OR name = ?", "alice", "bob").find(User)
        assert [u.name for u in found] == ["bob"]

    def test_inline_string_condition(self, db, users):
        assert len(db.find(User, "age > ?", 18)) == 3

    def test_mapping_keeps_zero(self, db, users):
        db.model(User).where("name = ?", "carol").update("age", 0)
        assert [u.name for u in db.where({"age": 0}).find(User)] == ["carol"]
        assert [u.name for u in db.find(User, {"age": 0})] == ["carol"]

    def test_record_skips_zero(self, db, users):
        found = db.where(User(name="carol", age=0)).find(User)
        assert [u.name for u in found] == ["carol"]
        assert db.where_nonzero(User(name="carol", age=0), "name", "age").find(User) == []

    def test_select_fields(self, db, users):
        rows = db.model(User).select("name", "age").order("id").find(dict)
        assert rows[0] == {"name": "jinzhu", "age": 18}

    def test_omit_fields(self, db, users):
        rows = db.model(User).omit("email", "birthday").find(dict)
        assert "email" not in rows[0]
        assert "name" in rows[0]

    def test_select_omit_conflict(self, db):
        with pytest.raises(ParameterError):
            db.model(User).select("name").omit("age")

    def test_order_appends(self, db, users):
        found = db.order("age desc").order("name").find(User)
        assert [u.name for u in found] == ["bob", "alice", "carol", "jinzhu"]
        same = db.order("age desc, name").find(User)
        assert [u.id for u in same] == [u.id for u in found]

    def test_limit_offset(self, db, users):
        assert [u.id for u in db.order("id").limit(2).offset(1).find(User)] == [2, 3]
        assert [u.id for u in db.order("id").offset(3).find(User)] == [4]
        assert len(db.limit(3).find(User)) == 3
        # negative cancels
        assert len(db.limit(1).limit(-1).find(User)) == 4

    def test_chain_is_immutable(self, db, users):
        base = db.model(User).where("age = ?", 20)
        older = base.where("name = ?", "alice")
        assert base.count() == 2
        assert older.count() == 1


class TestScalars:
    def test_table_select_scalars(self, db, users):
        names = db.table("t_users").select("name").order("id").scalars()
        assert names == ["jinzhu", "alice", "bob", "carol"]

    def test_pluck(self, db, users):
        assert sorted(db.model(User).pluck("age")) == [18, 20, 20, 30]

    def test_distinct(self, db, users):
        assert db.model(User).distinct("age").order("age").scalars() == [18, 20, 30]
        assert db.model(User).distinct("age").count() == 3

    def test_count(self, db, users):
        assert db.model(User).count() == 4
        assert db.model(User).where("age = ?", 20).count() == 2

    def test_raw(self, db, users):
        names = db.raw("SELECT name FROM t_users WHERE age > ? ORDER BY id", 19).scalars()
        assert names == ["alice", "bob", "carol"]
        got = db.raw("SELECT * FROM t_users WHERE id IN ?", [2, 3]).find(User)
        assert [u.name for u in got] == ["alice", "bob"]
        row = db.raw("SELECT COUNT(*) AS n FROM t_users").take(dict)
        assert row["n"] == 4

    def test_no_table(self, db):
        with pytest.raises(ParameterError):
            db.find(dict)
