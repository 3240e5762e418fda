from __future__ import annotations

import pytest

from tablemap import ParameterError, describe
from tablemap.domain import clause
from tablemap.domain.clause import Statement
from tablemap.tests.shapes import Product, User


def _users() -> Statement:
    return Statement(descriptor=describe(User))


class TestPlaceholders:
    def test_list_expands(self):
        expr = clause.expand_placeholders("name IN ? AND age > ?", [["a", "b"], 3])
        assert expr.sql == "name IN (?, ?) AND age > ?"
        assert expr.params == ("a", "b", 3)

    def test_empty_list_matches_nothing(self):
        expr = clause.expand_placeholders("id IN ?", [[]])
        assert expr.sql == "id IN (NULL)"
        assert expr.params == ()

    def test_quoted_marker_is_literal(self):
        expr = clause.expand_placeholders("name = '?' AND id = ?", [1])
        assert expr.sql == "name = '?' AND id = ?"
        assert expr.params == (1,)

    def test_count_mismatch(self):
        with pytest.raises(ParameterError):
            clause.expand_placeholders("a = ? AND b = ?", [1])
        with pytest.raises(ParameterError):
            clause.expand_placeholders("a = ?", [1, 2])


def test_parse_order_splits_terms():
    terms = clause.parse_order("age desc, name")
    assert [t.render() for t in terms] == ["age DESC", "name"]
    assert clause.parse_order(("age", "asc"))[0].render() == '"age" ASC'
    with pytest.raises(ParameterError):
        clause.parse_order(("age", "sideways"))


def test_parse_order_keeps_function_commas():
    terms = clause.parse_order("coalesce(age, 0) desc")
    assert len(terms) == 1
    assert terms[0].render() == "coalesce(age, 0) DESC"


def test_first_defaults_to_primary_key_order():
    expr = clause.build_select(_users(), clause.FETCH_FIRST)
    assert expr.sql == (
        'SELECT * FROM "users" WHERE "users"."is_deleted" = ? '
        'ORDER BY "users"."id" ASC LIMIT ?'
    )
    assert expr.params == (0, 1)


def test_last_orders_descending():
    expr = clause.build_select(_users(), clause.FETCH_LAST)
    assert 'ORDER BY "users"."id" DESC' in expr.sql


def test_first_keeps_explicit_order():
    stmt = _users().replace(orders=clause.parse_order("age desc"))
    expr = clause.build_select(stmt, clause.FETCH_FIRST)
    assert "ORDER BY age DESC LIMIT ?" in expr.sql
    assert '"users"."id"' not in expr.sql


def test_take_has_no_order():
    expr = clause.build_select(_users(), clause.FETCH_TAKE)
    assert "ORDER BY" not in expr.sql
    assert expr.sql.endswith("LIMIT ?")


def test_first_needs_model():
    with pytest.raises(ParameterError):
        clause.build_select(Statement(table="t_users"), clause.FETCH_FIRST)


def test_offset_without_limit():
    expr = clause.build_select(_users().replace(offset=3))
    assert expr.sql.endswith("LIMIT ? OFFSET ?")
    assert expr.params[-2:] == (-1, 3)


def test_unscoped_drops_soft_delete_filter():
    expr = clause.build_select(_users().replace(unscoped=True))
    assert expr.sql == 'SELECT * FROM "users"'


def test_user_conditions_come_before_scope():
    stmt = _users().replace(wheres=(clause.cond_from_string("name = ? or age = ?", ["a", 1]),))
    expr = clause.build_select(stmt)
    assert expr.sql == 'SELECT * FROM "users" WHERE (name = ? or age = ?) AND "users"."is_deleted" = ?'
    assert expr.params == ("a", 1, 0)


def test_projection_select_and_omit():
    select = clause.build_select(_users().replace(selects=("name", "age"), unscoped=True))
    assert select.sql == 'SELECT "name", "age" FROM "users"'
    omit = clause.build_select(_users().replace(omits=("email",), unscoped=True))
    assert '"email"' not in omit.sql
    assert '"name"' in omit.sql
    with pytest.raises(ParameterError):
        clause.build_select(_users().replace(selects=("name",), omits=("age",)))


def test_mapping_conditions_keep_zero_values():
    exprs = clause.cond_from_mapping(describe(User), {"age": 0, "email": None, "id": [1, 2]})
    assert [e.sql for e in exprs] == ['"age" = ?', '"email" IS NULL', '"id" IN (?, ?)']


def test_record_conditions_skip_zero_values():
    exprs = clause.cond_from_record(User(name="jinzhu", age=0))
    assert [e.sql for e in exprs] == ['"name" = ?']
    named = clause.cond_from_record(User(name="jinzhu", age=0), ["name", "age"])
    assert [e.params for e in named] == [("jinzhu",), (0,)]


def test_inline_primary_keys():
    d = describe(User)
    [one] = clause.inline_conditions(d, (10,))
    assert one.sql == '"users"."id" = ?'
    [many] = clause.inline_conditions(d, ([1, 2, 3],))
    assert many.sql == '"users"."id" IN (?, ?, ?)'
    with pytest.raises(ParameterError):
        clause.inline_conditions(d, ({"age": 1}, "extra"))


def test_count_distinct():
    stmt = _users().replace(distinct=True, selects=("age",), unscoped=True)
    assert clause.build_count(stmt).sql == 'SELECT COUNT(DISTINCT "age") FROM "users"'


def test_insert_multi_row():
    expr = clause.build_insert("products", ["code", "price"], [["a", 1.0], ["b", 2.0]])
    assert expr.sql == 'INSERT INTO "products" ("code", "price") VALUES (?, ?), (?, ?)'
    assert expr.params == ("a", 1.0, "b", 2.0)


def test_update_requires_assignments():
    stmt = Statement(descriptor=describe(Product))
    with pytest.raises(ParameterError):
        clause.build_update(stmt, [])
    expr = clause.build_update(stmt.replace(wheres=(clause.cond_primary_key(stmt.descriptor, "a"),)), [("price", 3)])
    assert expr.sql == 'UPDATE "products" SET "price" = ? WHERE "products"."code" = ?'
    assert expr.params == (3, "a")
