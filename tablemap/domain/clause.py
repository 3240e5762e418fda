"""
Query builder. Everything here is pure: a :class:`Statement` describes what a
session call has accumulated and the ``build_*`` functions turn it into a
parameterised :class:`Expr` (``?`` placeholders, params in order).
"""
from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable

from ..errors import ParameterError
from .schema import NOT_DELETED, Descriptor, describe, is_zero

FETCH_ALL = "all"
FETCH_FIRST = "first"
FETCH_LAST = "last"
FETCH_TAKE = "take"

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_ORDER_TERM = re.compile(r"^\s*(.+?)(?:\s+(asc|desc))?\s*$", re.IGNORECASE | re.DOTALL)
_HAS_OR = re.compile(r"\bor\b", re.IGNORECASE)


@dataclass(frozen=True)
class Expr:
    sql: str
    params: tuple = ()

    def __iter__(self):
        # allows ``sql, params = expr``
        return iter((self.sql, self.params))


@dataclass(frozen=True)
class OrderBy:
    expr: str
    desc: bool | None = None

    def render(self) -> str:
        if self.desc is None:
            return self.expr
        return f"{self.expr} {'DESC' if self.desc else 'ASC'}"


@dataclass(frozen=True)
class Statement:
    descriptor: Descriptor | None = None
    table: str | None = None
    wheres: tuple[Expr, ...] = ()
    selects: tuple[str, ...] = ()
    omits: tuple[str, ...] = ()
    distinct: bool = False
    orders: tuple[OrderBy, ...] = ()
    limit: int | None = None
    offset: int | None = None
    unscoped: bool = False
    raw: Expr | None = None

    @property
    def table_name(self) -> str:
        if self.table:
            return self.table
        if self.descriptor is not None:
            return self.descriptor.table
        raise ParameterError("no table: call model() or table() first")

    def replace(self, **changes) -> "Statement":
        return dataclasses.replace(self, **changes)


def quote(name: str) -> str:
    if name == "*":
        return name
    return ".".join('"' + part.replace('"', '""') + '"' for part in name.split("."))


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def expand_placeholders(sql: str, params: Iterable[Any]) -> Expr:
    """
    Bind ``params`` to the ``?`` markers of ``sql``. A list/tuple/set bound to a
    marker expands to ``(?, ?, ...)``. Markers inside quoted literals are ignored.
    """
    params = list(params)
    out: list[str] = []
    flat: list[Any] = []
    idx = 0
    quote_char = None
    for ch in sql:
        if quote_char:
            out.append(ch)
            if ch == quote_char:
                quote_char = None
            continue
        if ch in ("'", '"'):
            quote_char = ch
            out.append(ch)
            continue
        if ch != "?":
            out.append(ch)
            continue
        if idx >= len(params):
            raise ParameterError(f"not enough parameters for {sql!r}")
        value = params[idx]
        idx += 1
        if _is_sequence(value):
            items = list(value)
            if not items:
                out.append("(NULL)")
            else:
                out.append("(" + ", ".join("?" for _ in items) + ")")
                flat.extend(items)
        else:
            out.append("?")
            flat.append(value)
    if idx != len(params):
        raise ParameterError(f"{len(params)} parameters given but {sql!r} has {idx} placeholders")
    return Expr("".join(out), tuple(flat))


def parse_order(value: Any) -> tuple[OrderBy, ...]:
    """
    ``"age desc, name"`` -> (age DESC, name); ``("age", "desc")`` -> ("age" DESC).
    Terms that are not plain column references are kept verbatim.
    """
    if isinstance(value, OrderBy):
        return (value,)
    if isinstance(value, tuple) and len(value) == 2:
        col, direction = value
        if isinstance(direction, str):
            if direction.lower() not in ("asc", "desc"):
                raise ParameterError(f"bad order direction {direction!r}")
            desc = direction.lower() == "desc"
        else:
            desc = bool(direction)
        return (OrderBy(quote(col) if _IDENT.match(col) else col, desc),)
    if not isinstance(value, str) or not value.strip():
        raise ParameterError(f"bad order expression {value!r}")
    terms: list[OrderBy] = []
    depth = 0
    start = 0
    for i, ch in enumerate(value + ","):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            term = value[start:i]
            start = i + 1
            m = _ORDER_TERM.match(term)
            if not m or not m.group(1).strip():
                raise ParameterError(f"bad order expression {value!r}")
            expr, direction = m.group(1).strip(), m.group(2)
            terms.append(OrderBy(expr, None if direction is None else direction.lower() == "desc"))
    return tuple(terms)


# ---------------- Conditions ----------------

def _column_name(desc: Descriptor | None, key: str) -> str:
    if desc is not None:
        col = desc.lookup(key)
        if col is not None:
            return col.name
    return key


def _encode(desc: Descriptor | None, key: str, value: Any) -> Any:
    if desc is not None:
        col = desc.lookup(key)
        if col is not None:
            if _is_sequence(value):
                return [col.encode(v) for v in value]
            return col.encode(value)
    return value


def _equality(column: str, value: Any) -> Expr:
    if value is None:
        return Expr(f"{quote(column)} IS NULL")
    if _is_sequence(value):
        return expand_placeholders(f"{quote(column)} IN ?", [value])
    return Expr(f"{quote(column)} = ?", (value,))


def cond_from_string(sql: str, args: Iterable[Any] = ()) -> Expr:
    expr = expand_placeholders(sql, args)
    if _HAS_OR.search(expr.sql):
        return Expr(f"({expr.sql})", expr.params)
    return expr


def cond_from_mapping(desc: Descriptor | None, mapping: Mapping[str, Any]) -> list[Expr]:
    """Every entry participates, zero values included."""
    return [
        _equality(_column_name(desc, key), _encode(desc, key, value))
        for key, value in mapping.items()
    ]


def cond_from_record(record: Any, fields: Iterable[str] = (), naming=None) -> list[Expr]:
    """
    Zero-value-skipping filter: only non-zero fields become equality conditions.
    When ``fields`` are named, exactly those fields participate, zero or not.
    """
    desc = describe(record, naming)
    fields = tuple(fields)
    if fields:
        cols = [desc.column_for(f) for f in fields]
    else:
        cols = [c for c in desc.columns if not is_zero(desc.get(record, c))]
    return [_equality(c.name, c.encode(desc.get(record, c))) for c in cols]


def cond_primary_key(desc: Descriptor | None, value: Any) -> Expr:
    if desc is None:
        raise ParameterError("primary key conditions need a model")
    column = f"{desc.table}.{desc.primary_key.name}"
    if _is_sequence(value):
        return expand_placeholders(f"{quote(column)} IN ?", [[desc.primary_key.encode(v) for v in value]])
    return Expr(f"{quote(column)} = ?", (desc.primary_key.encode(value),))


def inline_conditions(desc: Descriptor | None, conds: tuple, naming=None) -> list[Expr]:
    """
    Conditions passed straight to a finisher, e.g. ``first(User, 10)``,
    ``find(User, [1, 2])``, ``find(User, "name <> ?", "x")``, ``find(User, {"age": 0})``.
    """
    if not conds:
        return []
    head, rest = conds[0], conds[1:]
    if isinstance(head, str):
        return [cond_from_string(head, rest)]
    if rest:
        raise ParameterError("extra arguments are only allowed after a string condition")
    if isinstance(head, Mapping):
        return cond_from_mapping(desc, head)
    if dataclasses.is_dataclass(head) and not isinstance(head, type):
        return cond_from_record(head, naming=naming)
    if isinstance(head, (int, float)) or _is_sequence(head):
        return [cond_primary_key(desc, head)]
    raise ParameterError(f"unsupported condition {head!r}")


# ---------------- Clause rendering ----------------

def resolve_columns(desc: Descriptor | None, keys: Iterable[str]) -> list[str]:
    return [_column_name(desc, k) for k in keys]


def check_select_omit(stmt: Statement) -> None:
    if stmt.omits and stmt.selects and stmt.selects != ("*",):
        raise ParameterError("select() and omit() cannot both list columns")


def projection(stmt: Statement) -> str:
    check_select_omit(stmt)
    desc = stmt.descriptor
    if stmt.selects and stmt.selects != ("*",):
        cols = [
            quote(c) if _IDENT.match(c) else c
            for c in resolve_columns(desc, stmt.selects)
        ]
    elif stmt.omits:
        if desc is None:
            raise ParameterError("omit() needs a model")
        omitted = set(resolve_columns(desc, stmt.omits))
        cols = [quote(c.name) for c in desc.columns if c.name not in omitted]
        if not cols:
            raise ParameterError("omit() removed every column")
    else:
        cols = ["*"]
    head = "SELECT DISTINCT " if stmt.distinct else "SELECT "
    return head + ", ".join(cols)


def scope_condition(stmt: Statement) -> Expr | None:
    desc = stmt.descriptor
    if stmt.unscoped or desc is None or desc.soft_delete is None:
        return None
    column = f"{stmt.table_name}.{desc.soft_delete.name}"
    return Expr(f"{quote(column)} = ?", (NOT_DELETED,))


def where_clause(stmt: Statement) -> Expr:
    parts = list(stmt.wheres)
    scope = scope_condition(stmt)
    if scope is not None:
        parts.append(scope)
    if not parts:
        return Expr("")
    sql = " WHERE " + " AND ".join(p.sql for p in parts)
    params: tuple = ()
    for p in parts:
        params += p.params
    return Expr(sql, params)


def build_select(stmt: Statement, fetch: str = FETCH_ALL) -> Expr:
    if stmt.raw is not None:
        return stmt.raw
    orders = list(stmt.orders)
    limit = stmt.limit
    if fetch in (FETCH_FIRST, FETCH_LAST):
        desc = stmt.descriptor
        if desc is None:
            raise ParameterError(f"{fetch}() needs a model; use take() with a bare table")
        if not orders:
            column = quote(f"{desc.table}.{desc.primary_key.name}")
            orders.append(OrderBy(column, fetch == FETCH_LAST))
        limit = 1
    elif fetch == FETCH_TAKE:
        # take imposes no ordering
        limit = 1

    where = where_clause(stmt)
    sql = f"{projection(stmt)} FROM {quote(stmt.table_name)}{where.sql}"
    params = list(where.params)
    if orders:
        sql += " ORDER BY " + ", ".join(o.render() for o in orders)
    if limit is not None or stmt.offset is not None:
        sql += " LIMIT ?"
        params.append(-1 if limit is None else limit)
        if stmt.offset is not None:
            sql += " OFFSET ?"
            params.append(stmt.offset)
    return Expr(sql, tuple(params))


def build_count(stmt: Statement) -> Expr:
    where = where_clause(stmt)
    target = "*"
    if stmt.distinct and stmt.selects and stmt.selects != ("*",):
        cols = ", ".join(quote(c) for c in resolve_columns(stmt.descriptor, stmt.selects))
        target = f"DISTINCT {cols}"
    return Expr(f"SELECT COUNT({target}) FROM {quote(stmt.table_name)}{where.sql}", where.params)


def build_insert(table: str, columns: list[str], rows: list[list[Any]]) -> Expr:
    if not columns:
        return Expr(f"INSERT INTO {quote(table)} DEFAULT VALUES")
    width = len(columns)
    marks = "(" + ", ".join("?" for _ in range(width)) + ")"
    params: list[Any] = []
    for row in rows:
        if len(row) != width:
            raise ParameterError("row width does not match column list")
        params.extend(row)
    sql = (
        f"INSERT INTO {quote(table)} ({', '.join(quote(c) for c in columns)}) "
        f"VALUES {', '.join(marks for _ in rows)}"
    )
    return Expr(sql, tuple(params))


def build_update(stmt: Statement, assignments: list[tuple[str, Any]]) -> Expr:
    if not assignments:
        raise ParameterError("nothing to update")
    where = where_clause(stmt)
    sets = ", ".join(f"{quote(c)} = ?" for c, _ in assignments)
    params = tuple(v for _, v in assignments) + where.params
    return Expr(f"UPDATE {quote(stmt.table_name)} SET {sets}{where.sql}", params)


def build_delete(stmt: Statement) -> Expr:
    where = where_clause(stmt)
    return Expr(f"DELETE FROM {quote(stmt.table_name)}{where.sql}", where.params)
