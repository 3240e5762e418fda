"""
Schema reflection: turn a dataclass record shape into a ``Descriptor``.

Field roles are declared with :func:`column`, which wraps ``dataclasses.field``
and stores the annotations in the field metadata. Descriptors are computed
once per (shape, naming strategy) and cached for the life of the process.
"""
from __future__ import annotations

import dataclasses
import enum
import threading
import time
import types
import typing
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable

from ..errors import SchemaError
from .naming import NamingStrategy, snake_case

META_KEY = "tablemap"

TIME_UNITS = ("sec", "milli", "nano")
SOFT_DELETE_MODES = ("unix", "milli", "flag")
NOT_DELETED = 0


class Role(str, enum.Enum):
    PLAIN = "plain"
    PRIMARY_KEY = "primary_key"
    CREATE_TIME = "auto_create_time"
    UPDATE_TIME = "auto_update_time"
    SOFT_DELETE = "soft_delete"


def column(
    default: Any = dataclasses.MISSING,
    *,
    default_factory: Any = dataclasses.MISSING,
    name: str | None = None,
    primary_key: bool = False,
    db_default: Any = None,
    auto_create_time: bool | str = False,
    auto_update_time: bool | str = False,
    soft_delete: str | None = None,
    unique: bool = False,
    index: bool = False,
    not_null: bool = False,
    size: int | None = None,
):
    """
    Declare a record field together with its column annotations.

    ``auto_create_time``/``auto_update_time`` take ``True`` or a unit
    (``"sec"``, ``"milli"``, ``"nano"``) for integer columns; ``soft_delete``
    takes ``"unix"``, ``"milli"`` or ``"flag"``.
    """
    meta = {
        "name": name,
        "primary_key": primary_key,
        "db_default": db_default,
        "auto_create_time": auto_create_time,
        "auto_update_time": auto_update_time,
        "soft_delete": soft_delete,
        "unique": unique,
        "index": index,
        "not_null": not_null,
        "size": size,
    }
    return dataclasses.field(default=default, default_factory=default_factory, metadata={META_KEY: meta})


def is_zero(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (bool, int, float, Decimal)):
        return value == 0
    if isinstance(value, (str, bytes, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _unwrap_optional(tp: Any) -> tuple[Any, bool]:
    origin = typing.get_origin(tp)
    if origin is typing.Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        nullable = len(args) != len(typing.get_args(tp))
        if len(args) == 1:
            return args[0], nullable
        raise SchemaError(f"unsupported union annotation: {tp!r}")
    return tp, False


_SQL_TYPES = {
    bool: "BOOLEAN",
    int: "INTEGER",
    float: "REAL",
    str: "TEXT",
    bytes: "BLOB",
    datetime: "DATETIME",
    date: "DATE",
    Decimal: "NUMERIC",
}

_ZERO = {bool: False, int: 0, float: 0.0, str: "", bytes: b""}


@dataclass(frozen=True)
class Column:
    name: str
    field: str
    py_type: type
    role: Role = Role.PLAIN
    nullable: bool = False
    db_default: Any = None
    time_unit: str | None = None
    soft_delete_mode: str | None = None
    unique: bool = False
    index: bool = False
    not_null: bool = False
    size: int | None = None

    @property
    def auto_increment(self) -> bool:
        return self.role is Role.PRIMARY_KEY and self.py_type is int

    def sql_type(self) -> str:
        if self.py_type is str and self.size:
            return f"VARCHAR({self.size})"
        return _SQL_TYPES[self.py_type]

    def encode(self, value: Any) -> Any:
        if value is None:
            return None
        if self.py_type is datetime and isinstance(value, datetime):
            return value.isoformat(sep=" ")
        if self.py_type is date and isinstance(value, date):
            return value.isoformat()
        if self.py_type is bool:
            return int(bool(value))
        if self.py_type is Decimal:
            return str(value)
        return value

    def decode(self, value: Any) -> Any:
        if value is None:
            return None
        if self.py_type is datetime and isinstance(value, str):
            return datetime.fromisoformat(value)
        if self.py_type is date and isinstance(value, str):
            return date.fromisoformat(value)
        if self.py_type is bool:
            return bool(value)
        if self.py_type is Decimal:
            return Decimal(str(value))
        if self.py_type is int and isinstance(value, (float, str)):
            return int(value)
        if self.py_type is str and not isinstance(value, str):
            return str(value)
        return value

    def now(self) -> Any:
        """Current value for a timestamp column."""
        if self.py_type is datetime:
            return datetime.now()
        if self.time_unit == "milli":
            return time.time_ns() // 1_000_000
        if self.time_unit == "nano":
            return time.time_ns()
        return int(time.time())

    def deleted_marker(self) -> int:
        if self.soft_delete_mode == "flag":
            return 1
        if self.soft_delete_mode == "milli":
            return time.time_ns() // 1_000_000
        return int(time.time())


@dataclass(frozen=True)
class Descriptor:
    shape: type
    table: str
    columns: tuple[Column, ...]
    primary_key: Column
    create_time: Column | None = None
    update_time: Column | None = None
    soft_delete: Column | None = None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def lookup(self, key: str) -> Column | None:
        """Find a column by column or field name; ``UpdateOn`` also finds ``update_on``."""
        for c in self.columns:
            if c.name == key or c.field == key:
                return c
        low = key.lower()
        snake = snake_case(key)
        for c in self.columns:
            if c.name in (low, snake) or c.field.lower() == low:
                return c
        return None

    def column_for(self, key: str) -> Column:
        c = self.lookup(key)
        if c is None:
            raise SchemaError(f"{self.shape.__name__} has no field or column {key!r}")
        return c

    def get(self, record: Any, col: Column) -> Any:
        return getattr(record, col.field)

    def pk_value(self, record: Any) -> Any:
        return getattr(record, self.primary_key.field)

    def build(self, row: dict[str, Any]) -> Any:
        """Construct a record from a ``{column_name: db_value}`` mapping."""
        kwargs: dict[str, Any] = {}
        late: dict[str, Any] = {}
        init_fields = {f.name: f for f in dataclasses.fields(self.shape)}
        for col in self.columns:
            f = init_fields[col.field]
            if col.name in row:
                value = col.decode(row[col.name])
            elif f.default is not dataclasses.MISSING:
                value = f.default
            elif f.default_factory is not dataclasses.MISSING:
                value = f.default_factory()
            else:
                value = None if col.nullable else _ZERO.get(col.py_type)
            if f.init:
                kwargs[col.field] = value
            else:
                late[col.field] = value
        record = self.shape(**kwargs)
        for k, v in late.items():
            setattr(record, k, v)
        return record

    def fill(self, record: Any, row: dict[str, Any]) -> Any:
        """Copy decoded row values into an existing record."""
        for col in self.columns:
            if col.name in row:
                setattr(record, col.field, col.decode(row[col.name]))
        return record


def _time_unit(flag: bool | str) -> str:
    if flag is True:
        return "sec"
    if flag in TIME_UNITS:
        return flag
    raise SchemaError(f"unknown timestamp unit {flag!r}")


def _build_descriptor(shape: type, naming: NamingStrategy) -> Descriptor:
    if not (isinstance(shape, type) and dataclasses.is_dataclass(shape)):
        raise SchemaError(f"record shape must be a dataclass type, got {shape!r}")
    try:
        hints = typing.get_type_hints(shape)
    except Exception as e:
        raise SchemaError(f"cannot resolve annotations of {shape.__name__}: {e}") from e

    table = getattr(shape, "__tablename__", None) or naming.table_name(shape.__name__)
    cols: list[Column] = []
    for f in dataclasses.fields(shape):
        meta = f.metadata.get(META_KEY, {})
        py_type, nullable = _unwrap_optional(hints[f.name])
        if py_type not in _SQL_TYPES:
            raise SchemaError(f"{shape.__name__}.{f.name}: unsupported type {py_type!r}")

        role = Role.PLAIN
        time_unit = None
        soft_mode = None
        declared = [
            k for k in ("primary_key", "auto_create_time", "auto_update_time", "soft_delete") if meta.get(k)
        ]
        if len(declared) > 1:
            raise SchemaError(f"{shape.__name__}.{f.name}: conflicting roles {declared}")
        if meta.get("primary_key"):
            role = Role.PRIMARY_KEY
        elif meta.get("auto_create_time"):
            role = Role.CREATE_TIME
            time_unit = _time_unit(meta["auto_create_time"])
        elif meta.get("auto_update_time"):
            role = Role.UPDATE_TIME
            time_unit = _time_unit(meta["auto_update_time"])
        elif meta.get("soft_delete"):
            soft_mode = meta["soft_delete"]
            if soft_mode not in SOFT_DELETE_MODES:
                raise SchemaError(f"{shape.__name__}.{f.name}: unknown soft delete mode {soft_mode!r}")
            if py_type is not int:
                raise SchemaError(f"{shape.__name__}.{f.name}: soft delete flag must be int")
            role = Role.SOFT_DELETE

        if role in (Role.CREATE_TIME, Role.UPDATE_TIME) and py_type not in (int, datetime):
            raise SchemaError(f"{shape.__name__}.{f.name}: timestamp must be int or datetime")

        cols.append(Column(
            name=meta.get("name") or naming.column_name(f.name),
            field=f.name,
            py_type=py_type,
            role=role,
            nullable=nullable,
            db_default=meta.get("db_default"),
            time_unit=time_unit,
            soft_delete_mode=soft_mode,
            unique=bool(meta.get("unique")),
            index=bool(meta.get("index")),
            not_null=bool(meta.get("not_null")),
            size=meta.get("size"),
        ))

    names = [c.name for c in cols]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise SchemaError(f"{shape.__name__}: duplicate column names {dupes}")

    def single(role: Role) -> Column | None:
        found = [c for c in cols if c.role is role]
        if len(found) > 1:
            raise SchemaError(f"{shape.__name__}: more than one {role.value} field ({[c.field for c in found]})")
        return found[0] if found else None

    pk = single(Role.PRIMARY_KEY)
    if pk is None:
        implicit = next((c for c in cols if c.field == "id"), None)
        if implicit is None:
            raise SchemaError(f"{shape.__name__}: no primary key (declare one or add an 'id' field)")
        pk = dataclasses.replace(implicit, role=Role.PRIMARY_KEY)
        cols[cols.index(implicit)] = pk

    # 约定字段：created_at / updated_at 在未显式声明时自动追踪时间
    for role, conventional in ((Role.CREATE_TIME, "created_at"), (Role.UPDATE_TIME, "updated_at")):
        if any(c.role is role for c in cols):
            continue
        for i, c in enumerate(cols):
            if c.field == conventional and c.role is Role.PLAIN and c.py_type in (int, datetime):
                cols[i] = dataclasses.replace(c, role=role, time_unit="sec")

    return Descriptor(
        shape=shape,
        table=table,
        columns=tuple(cols),
        primary_key=pk,
        create_time=single(Role.CREATE_TIME),
        update_time=single(Role.UPDATE_TIME),
        soft_delete=single(Role.SOFT_DELETE),
    )


@lru_cache(maxsize=None)
def _cached(shape: type, naming: NamingStrategy) -> Descriptor:
    return _build_descriptor(shape, naming)


def describe(shape: Any, naming: NamingStrategy | None = None) -> Descriptor:
    """Descriptor for a shape (or a record instance of it); cached per naming strategy."""
    if not isinstance(shape, type):
        shape = type(shape)
    return _cached(shape, naming or NamingStrategy())


# ---------------- Hooks ----------------

HOOK_KINDS = (
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
)

Hook = Callable[[Any, Any], None]
_hooks: dict[type, dict[str, list[Hook]]] = {}
_hooks_lock = threading.Lock()


def register_hook(shape: type, kind: str, fn: Hook) -> Hook:
    """Register ``fn(session, record)`` to run for ``kind`` on records of ``shape``."""
    if kind not in HOOK_KINDS:
        raise ValueError(f"unknown hook kind {kind!r}; expected one of {HOOK_KINDS}")
    with _hooks_lock:
        _hooks.setdefault(shape, {}).setdefault(kind, []).append(fn)
    return fn


def clear_hooks(shape: type | None = None) -> None:
    with _hooks_lock:
        if shape is None:
            _hooks.clear()
        else:
            _hooks.pop(shape, None)


def hooks_for(shape: type, kind: str) -> list[Hook]:
    with _hooks_lock:
        return list(_hooks.get(shape, {}).get(kind, ()))
