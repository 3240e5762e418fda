from __future__ import annotations

import time

import pytest

from tablemap import MissingFilterError, ParameterError, RecordNotFound, register_hook
from tablemap.tests.shapes import Note, Product, User


class TestSoftDelete:
    def test_delete_record_sets_flag(self, db, users):
        u = users[0]
        res = db.delete(u)
        assert res.rows_affected == 1
        assert u.is_deleted == 1
        with pytest.raises(RecordNotFound):
            db.first(User, u.id)
        hidden = db.unscoped().first(User, u.id)
        assert hidden.is_deleted == 1
        assert db.model(User).count() == 3
        assert db.table("t_users").count() == 4

    def test_delete_twice_affects_nothing(self, db, users):
        db.delete(users[0])
        assert db.delete(User, users[0].id).rows_affected == 0

    def test_unix_marker(self, db):
        n = Note(body="x")
        db.create(n)
        before = int(time.time())
        db.delete(n)
        assert n.deleted_at >= before
        assert db.find(Note) == []
        assert db.unscoped().first(Note).deleted_at == n.deleted_at

    def test_restore(self, db, users):
        db.delete(users[1])
        db.unscoped().model(User).where("id = ?", users[1].id).update("is_deleted", 0)
        assert db.first(User, users[1].id).name == "alice"


class TestDeleteTargets:
    def test_by_key(self, db, users):
        assert db.delete(User, 2).rows_affected == 1
        assert [u.id for u in db.order("id").find(User)] == [1, 3, 4]

    def test_by_key_list(self, db, users):
        assert db.delete(User, [1, 2, 3]).rows_affected == 3
        assert [u.name for u in db.find(User)] == ["carol"]

    def test_by_conditions(self, db, users):
        res = db.model(User).where("age = ?", 20).delete()
        assert res.rows_affected == 2
        res = db.delete(User, "name LIKE ?", "%jin%")
        assert res.rows_affected == 1

    def test_unscoped_is_permanent(self, db, users):
        res = db.unscoped().delete(users[0])
        assert res.rows_affected == 1
        assert db.table("t_users").count() == 3
        with pytest.raises(RecordNotFound):
            db.unscoped().first(User, users[0].id)

    def test_shape_without_soft_delete(self, db):
        db.create([Product(code="A"), Product(code="B")])
        assert db.delete(Product(code="A")).rows_affected == 1
        assert db.delete(Product, {"code": "B"}).rows_affected == 1
        assert db.find(Product) == []

    def test_requires_conditions(self, db, users):
        with pytest.raises(MissingFilterError):
            db.delete(User)
        with pytest.raises(MissingFilterError):
            db.delete(User(name="no key"))
        assert db.session(allow_global_update=True).delete(User).rows_affected == 4

    def test_requires_target(self, db):
        with pytest.raises(ParameterError):
            db.delete()
        with pytest.raises(ParameterError):
            db.delete("t_users")


def test_before_delete_hook_can_abort(db, users):
    def guard(session, user):
        if user.name == "jinzhu":
            raise PermissionError("protected")

    register_hook(User, "before_delete", guard)
    with pytest.raises(PermissionError):
        db.delete(users[0])
    assert db.first(User, users[0].id).is_deleted == 0
    db.delete(users[1])
    with pytest.raises(RecordNotFound):
        db.first(User, users[1].id)
