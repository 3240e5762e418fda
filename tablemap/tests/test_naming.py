from __future__ import annotations

import pytest

from tablemap.config import NamingConfig
from tablemap.domain.naming import NamingStrategy, pluralize, snake_case


@pytest.mark.parametrize("name,expected", [
    ("User", "user"),
    ("MemberNumber", "member_number"),
    ("HTTPRequest", "http_request"),
    ("OrderItemV2", "order_item_v2"),
])
def test_snake_case(name, expected):
    assert snake_case(name) == expected


@pytest.mark.parametrize("word,expected", [
    ("user", "users"),
    ("category", "categories"),
    ("box", "boxes"),
    ("person", "people"),
    ("order_item", "order_items"),
    ("data", "data"),
    ("day", "days"),
    ("wolf", "wolves"),
])
def test_pluralize(word, expected):
    assert pluralize(word) == expected


def test_prefix_and_plural():
    naming = NamingStrategy(table_prefix="t_")
    assert naming.table_name("User") == "t_users"
    assert naming.table_name("OrderItem") == "t_order_items"


def test_singular_table():
    naming = NamingStrategy(table_prefix="t_", singular_table=True)
    assert naming.table_name("User") == "t_user"


def test_explicit_mapping_wins_without_prefix():
    naming = NamingStrategy.from_config(
        NamingConfig(table_prefix="t_", table_names={"User": "accounts"})
    )
    assert naming.table_name("User") == "accounts"
    assert naming.table_name("Order") == "t_orders"


def test_strategy_is_hashable():
    # descriptors are cached per strategy
    a = NamingStrategy.from_config(NamingConfig(table_names={"A": "x", "B": "y"}))
    b = NamingStrategy.from_config(NamingConfig(table_names={"B": "y", "A": "x"}))
    assert a == b
    assert hash(a) == hash(b)
