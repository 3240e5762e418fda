"""
Chainable session API.

A ``Session`` carries an immutable :class:`Statement`; every chain call
returns a new session, so a configured base can be reused freely::

    db = open_db(settings)
    adults = db.model(User).where("age >= ?", 18).order("age desc").find(User)
    db.model(user).updates({"name": "x", "age": 0})

Writes run inside an implicit transaction unless
``orm.skip_default_transaction`` is set or the session is bound to an
explicit transaction (``begin()`` / ``transaction(fn)``).
"""
from __future__ import annotations

import dataclasses
import logging
import sqlite3
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from ..config import Settings
from ..db import Database
from ..domain import clause
from ..domain.clause import Expr, Statement
from ..domain.schema import Column, Descriptor, Role, hooks_for, is_zero
from ..errors import (
    ExecutionError,
    InvalidTransactionStateError,
    MissingFilterError,
    ParameterError,
    RecordNotFound,
)
from ..logs import search_logs
from ..repository import executor
from ..repository.executor import Result
from ..repository.migrator import Migrator
from .transaction import Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_record(value: Any) -> bool:
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _is_shape(value: Any) -> bool:
    return isinstance(value, type) and dataclasses.is_dataclass(value)


def _split_columns(cols: tuple) -> tuple[str, ...]:
    out: list[str] = []
    for c in cols:
        if isinstance(c, (list, tuple)):
            out.extend(_split_columns(tuple(c)))
        elif isinstance(c, str) and "," in c and "(" not in c:
            out.extend(p.strip() for p in c.split(",") if p.strip())
        else:
            out.append(c)
    return tuple(out)


class Session:
    def __init__(
        self,
        database: Database,
        stmt: Statement | None = None,
        tx: Transaction | None = None,
        skip_hooks: bool = False,
        allow_global_update: bool = False,
        model_record: Any = None,
    ):
        self.database = database
        self.stmt = stmt or Statement()
        self.tx = tx
        self.skip_hooks = skip_hooks
        self.allow_global_update = allow_global_update
        self.model_record = model_record

    def _clone(self, **changes) -> "Session":
        params = {
            "stmt": self.stmt,
            "tx": self.tx,
            "skip_hooks": self.skip_hooks,
            "allow_global_update": self.allow_global_update,
            "model_record": self.model_record,
        }
        params.update(changes)
        return Session(self.database, **params)

    def _fresh(self) -> "Session":
        """Same connection scope and options, empty statement."""
        return self._clone(stmt=Statement(), model_record=None)

    @property
    def settings(self) -> Settings:
        return self.database.settings

    def describe(self, shape: Any) -> Descriptor:
        return self.database.describe(shape)

    def __repr__(self) -> str:
        scope = f"tx={self.tx.id}" if self.tx is not None else "autocommit"
        return f"<Session {self.database.dsn} {scope}>"

    # ---------------- Connections ----------------

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        if self.tx is not None:
            yield self.tx.conn
            return
        with self.database.pool.acquire() as conn:
            yield conn

    @contextmanager
    def _write(self) -> Iterator["Session"]:
        """
        Yield the session to run a write through. Outside an explicit transaction
        this opens an implicit one that commits on success and rolls back on error.
        """
        if self.tx is not None or self.settings.orm.skip_default_transaction:
            if self.tx is not None:
                self.tx.ensure_open()
            yield self
            return
        tx = Transaction.begin(self.database.pool)
        try:
            yield self._clone(tx=tx)
        except BaseException:
            if tx.is_open:
                tx.rollback()
            raise
        if tx.is_open:
            tx.commit()

    def _execute(self, expr: Expr, action: str) -> Result:
        with self._conn() as conn:
            return executor.execute(conn, expr, action, self._table_or_none(), self.settings.logging)

    def _fetch_rows(self, expr: Expr, action: str = "QUERY") -> list[sqlite3.Row]:
        with self._conn() as conn:
            return executor.fetch_all(conn, expr, action, self._table_or_none(), self.settings.logging)

    def _table_or_none(self) -> str | None:
        try:
            return self.stmt.table_name
        except ParameterError:
            return None

    # ---------------- Chain methods ----------------

    def model(self, value: Any) -> "Session":
        """Target a shape, or a record whose primary key (when set) scopes the call."""
        if _is_shape(value):
            return self._clone(stmt=self.stmt.replace(descriptor=self.describe(value)), model_record=None)
        if _is_record(value):
            return self._clone(stmt=self.stmt.replace(descriptor=self.describe(value)), model_record=value)
        raise ParameterError(f"model() takes a dataclass shape or record, got {value!r}")

    def table(self, name: str) -> "Session":
        return self._clone(stmt=self.stmt.replace(table=name))

    def where(self, cond: Any, *args: Any) -> "Session":
        """
        ``where("name = ?", x)``, ``where({"age": 0})`` (every key participates) or
        ``where(record, *fields)`` (zero-value-skipping, see :meth:`where_nonzero`).
        """
        if isinstance(cond, str):
            exprs = [clause.cond_from_string(cond, args)]
        elif isinstance(cond, Mapping):
            if args:
                raise ParameterError("where(mapping) takes no extra arguments")
            exprs = clause.cond_from_mapping(self.stmt.descriptor, cond)
        elif _is_record(cond):
            return self.where_nonzero(cond, *args)
        else:
            raise ParameterError(f"unsupported where() condition {cond!r}")
        return self._clone(stmt=self.stmt.replace(wheres=self.stmt.wheres + tuple(exprs)))

    def where_nonzero(self, record: Any, *fields: str) -> "Session":
        """
        Filter on the non-zero fields of ``record``. A field holding its zero value
        (0, "", False, None) cannot be told apart from "unset" and is skipped;
        name ``fields`` (or use a mapping) to compare against zero explicitly.
        """
        if not _is_record(record):
            raise ParameterError("where_nonzero() takes a record instance")
        exprs = clause.cond_from_record(record, fields, self.database.naming)
        return self._clone(stmt=self.stmt.replace(wheres=self.stmt.wheres + tuple(exprs)))

    def select(self, *cols: Any) -> "Session":
        stmt = self.stmt.replace(selects=_split_columns(cols))
        clause.check_select_omit(stmt)
        return self._clone(stmt=stmt)

    def omit(self, *cols: Any) -> "Session":
        stmt = self.stmt.replace(omits=self.stmt.omits + _split_columns(cols))
        clause.check_select_omit(stmt)
        return self._clone(stmt=stmt)

    def distinct(self, *cols: Any) -> "Session":
        stmt = self.stmt.replace(distinct=True)
        if cols:
            stmt = stmt.replace(selects=_split_columns(cols))
        return self._clone(stmt=stmt)

    def order(self, value: Any) -> "Session":
        """Append ordering; ``order("age desc, name")`` == ``order("age desc").order("name")``."""
        return self._clone(stmt=self.stmt.replace(orders=self.stmt.orders + clause.parse_order(value)))

    def limit(self, n: int | None) -> "Session":
        if n is not None and n < 0:
            n = None
        return self._clone(stmt=self.stmt.replace(limit=n))

    def offset(self, n: int | None) -> "Session":
        if n is not None and n < 0:
            n = None
        return self._clone(stmt=self.stmt.replace(offset=n))

    def unscoped(self) -> "Session":
        """Drop the soft-delete scope: queries see deleted rows, deletes are real."""
        return self._clone(stmt=self.stmt.replace(unscoped=True))

    def session(self, skip_hooks: bool | None = None, allow_global_update: bool | None = None) -> "Session":
        changes: dict[str, Any] = {}
        if skip_hooks is not None:
            changes["skip_hooks"] = skip_hooks
        if allow_global_update is not None:
            changes["allow_global_update"] = allow_global_update
        return self._clone(**changes)

    def raw(self, sql: str, *args: Any) -> "Session":
        return self._clone(stmt=self.stmt.replace(raw=clause.expand_placeholders(sql, args)))

    # ---------------- Hooks ----------------

    def _run_hooks(self, kind: str, record: Any) -> None:
        if self.skip_hooks or record is None:
            return
        for fn in hooks_for(type(record), kind):
            fn(self._fresh(), record)

    # ---------------- Query ----------------

    def _query_stmt(self, dest: Any, conds: tuple) -> tuple[Statement, Descriptor | None]:
        """Statement to run plus the descriptor used to build results (None: dicts)."""
        stmt = self.stmt
        target: Descriptor | None = None
        if _is_shape(dest) or _is_record(dest):
            target = self.describe(dest)
            if stmt.descriptor is None:
                stmt = stmt.replace(descriptor=target)
        elif dest is None:
            target = stmt.descriptor
        elif dest is not dict:
            raise ParameterError(f"unsupported destination {dest!r}")
        if stmt.raw is None and stmt.descriptor is None and stmt.table is None:
            raise ParameterError("no table: pass a shape or call model()/table() first")

        extra = list(clause.inline_conditions(stmt.descriptor, conds, self.database.naming))
        if self.model_record is not None and stmt.descriptor is not None:
            pk = stmt.descriptor.pk_value(self.model_record)
            if not is_zero(pk):
                extra.insert(0, clause.cond_primary_key(stmt.descriptor, pk))
        if extra:
            stmt = stmt.replace(wheres=stmt.wheres + tuple(extra))
        return stmt, target

    def _materialize(self, rows: list[sqlite3.Row], dest: Any, target: Descriptor | None) -> list[Any]:
        if target is None:
            return [dict(r) for r in rows]
        if _is_record(dest):
            return [target.fill(dest, dict(r)) for r in rows[:1]]
        return [target.build(dict(r)) for r in rows]

    def _fetch_one(self, fetch: str, dest: Any, conds: tuple) -> Any:
        stmt, target = self._query_stmt(dest, conds)
        rows = self._fetch_rows(clause.build_select(stmt, fetch), fetch.upper())
        if not rows:
            raise RecordNotFound(f"record not found in {stmt.table_name if stmt.raw is None else 'raw query'}")
        return self._materialize(rows, dest, target)[0]

    def first(self, dest: Any = None, *conds: Any) -> Any:
        """First row ordered by primary key; raises ``RecordNotFound`` when none match."""
        return self._fetch_one(clause.FETCH_FIRST, dest, conds)

    def last(self, dest: Any = None, *conds: Any) -> Any:
        return self._fetch_one(clause.FETCH_LAST, dest, conds)

    def take(self, dest: Any = None, *conds: Any) -> Any:
        """Any one matching row, no implicit ordering; raises ``RecordNotFound`` when none match."""
        return self._fetch_one(clause.FETCH_TAKE, dest, conds)

    def find(self, dest: Any = None, *conds: Any) -> list[Any]:
        """All matching rows; an empty result is an empty list, never an error."""
        if _is_record(dest):
            raise ParameterError("find() fills lists; pass the shape, or use first()/take() for one record")
        stmt, target = self._query_stmt(dest, conds)
        rows = self._fetch_rows(clause.build_select(stmt, clause.FETCH_ALL), "FIND")
        return self._materialize(rows, dest, target)

    def scalars(self) -> list[Any]:
        """First column of every row, e.g. ``table("t_users").select("name").scalars()``."""
        stmt, _ = self._query_stmt(dict, ())
        rows = self._fetch_rows(clause.build_select(stmt, clause.FETCH_ALL), "SCALARS")
        return [r[0] for r in rows]

    def pluck(self, column: str) -> list[Any]:
        return self.select(column).scalars()

    def count(self) -> int:
        stmt, _ = self._query_stmt(dict, ())
        if stmt.raw is not None:
            raise ParameterError("count() does not apply to raw queries")
        rows = self._fetch_rows(clause.build_count(stmt), "COUNT")
        return int(rows[0][0])

    # ---------------- Create ----------------

    def create(self, value: Any) -> Result:
        """Insert a record, a list of records, a mapping or a list of mappings."""
        return self._create(value, self.settings.orm.create_batch_size)

    def create_in_batches(self, items: Any, batch_size: int) -> Result:
        if batch_size <= 0:
            raise ParameterError("batch_size must be positive")
        return self._create(items, batch_size)

    def _create(self, value: Any, batch_size: int) -> Result:
        if isinstance(value, Mapping):
            return self._create_maps([value], batch_size)
        if _is_record(value):
            return self._create_records([value], batch_size)
        if isinstance(value, (list, tuple)):
            items = list(value)
            if not items:
                return Result()
            if all(isinstance(v, Mapping) for v in items):
                return self._create_maps(items, batch_size)
            if all(_is_record(v) for v in items):
                return self._create_records(items, batch_size)
        raise ParameterError(f"create() takes records or mappings, got {type(value).__name__}")

    def _insert_columns(self, desc: Descriptor) -> list[Column]:
        stmt = self.stmt
        clause.check_select_omit(stmt)
        if stmt.selects and stmt.selects != ("*",):
            return [desc.column_for(c) for c in stmt.selects]
        omitted = set(clause.resolve_columns(desc, stmt.omits))
        return [c for c in desc.columns if c.name not in omitted]

    def _prepare_record(self, desc: Descriptor, record: Any) -> None:
        for col in desc.columns:
            value = desc.get(record, col)
            if col.db_default is not None and is_zero(value):
                setattr(record, col.field, col.db_default)
            elif col.role in (Role.CREATE_TIME, Role.UPDATE_TIME) and is_zero(value):
                setattr(record, col.field, col.now())
            elif col.role is Role.SOFT_DELETE and value is None:
                setattr(record, col.field, 0)

    def _create_records(self, records: list[Any], batch_size: int) -> Result:
        shape = type(records[0])
        if any(type(r) is not shape for r in records):
            raise ParameterError("a batch must contain records of one shape")
        desc = self.describe(shape)
        table = self.stmt.table or desc.table
        columns = self._insert_columns(desc)
        total = Result()
        with self._write() as s:
            for record in records:
                s._run_hooks("before_create", record)
                s._prepare_record(desc, record)
            size = batch_size or len(records)
            for start in range(0, len(records), size):
                chunk = records[start:start + size]
                s._insert_chunk(desc, table, columns, chunk, total)
            for record in records:
                s._run_hooks("after_create", record)
        logger.debug("created %d %s row(s)", total.rows_affected, table)
        return total

    def _insert_chunk(self, desc: Descriptor, table: str, columns: list[Column], chunk: list[Any], total: Result) -> None:
        pk = desc.primary_key
        zero_pk = [is_zero(desc.pk_value(r)) for r in chunk]
        cols = [c for c in columns if not (c is pk and zero_pk[0])]
        if len(chunk) > 1 and ((any(zero_pk) and not all(zero_pk)) or not cols):
            # mixed explicit and generated keys: one row at a time keeps key assignment exact
            for record in chunk:
                self._insert_chunk(desc, table, columns, [record], total)
            return
        rows = [[c.encode(desc.get(r, c)) for c in cols] for r in chunk]
        expr = clause.build_insert(table, [c.name for c in cols], rows)
        res = self._clone(stmt=Statement(table=table))._execute(expr, "CREATE")
        total.rows_affected += res.rows_affected
        total.last_insert_id = res.last_insert_id
        if zero_pk[0] and pk.auto_increment and res.last_insert_id is not None:
            first_id = res.last_insert_id - len(chunk) + 1
            for offset, record in enumerate(chunk):
                setattr(record, pk.field, first_id + offset)

    def _create_maps(self, maps: list[Mapping], batch_size: int) -> Result:
        # maps bypass hooks, timestamps and key write-back
        desc = self.stmt.descriptor
        table = self.stmt.table_name
        resolved: list[dict[str, Any]] = []
        for m in maps:
            row: dict[str, Any] = {}
            for key, value in m.items():
                if desc is not None:
                    col = desc.lookup(key)
                    if col is None:
                        raise ParameterError(f"{desc.shape.__name__} has no field or column {key!r}")
                    row[col.name] = col.encode(value)
                else:
                    row[key] = value
            if self.stmt.selects and self.stmt.selects != ("*",):
                keep = set(clause.resolve_columns(desc, self.stmt.selects))
                row = {k: v for k, v in row.items() if k in keep}
            if self.stmt.omits:
                drop = set(clause.resolve_columns(desc, self.stmt.omits))
                row = {k: v for k, v in row.items() if k not in drop}
            resolved.append(row)

        total = Result()
        size = batch_size or len(resolved)
        with self._write() as s:
            for start in range(0, len(resolved), size):
                chunk = resolved[start:start + size]
                keys = list(chunk[0].keys())
                if all(list(r.keys()) == keys for r in chunk):
                    groups = [chunk]
                else:
                    groups = [[r] for r in chunk]
                for group in groups:
                    cols = list(group[0].keys())
                    expr = clause.build_insert(table, cols, [[r[c] for c in cols] for r in group])
                    res = s._execute(expr, "CREATE")
                    total.rows_affected += res.rows_affected
                    total.last_insert_id = res.last_insert_id
        return total

    # ---------------- Update ----------------

    def _target_stmt(self, action: str) -> Statement:
        """Statement for update/delete with the model record's key applied and the guard enforced."""
        stmt = self.stmt
        if self.model_record is not None and stmt.descriptor is not None:
            pk = stmt.descriptor.pk_value(self.model_record)
            if not is_zero(pk):
                stmt = stmt.replace(wheres=stmt.wheres + (clause.cond_primary_key(stmt.descriptor, pk),))
        if not stmt.wheres and not self.allow_global_update:
            raise MissingFilterError(action, self._table_or_none())
        return stmt

    def save(self, record: Any) -> Result:
        """Write every field, zero values included; inserts when the key is unset or no row matched."""
        if not _is_record(record):
            raise ParameterError("save() takes a record")
        desc = self.describe(record)
        if is_zero(desc.pk_value(record)):
            return self.create(record)
        bound = self.model(record)
        with bound._write() as s:
            s._run_hooks("before_update", record)
            if desc.update_time is not None:
                setattr(record, desc.update_time.field, desc.update_time.now())
            assignments = [(c.name, c.encode(desc.get(record, c))) for c in desc.columns if c.role is not Role.PRIMARY_KEY]
            stmt = s._target_stmt("UPDATE").replace(unscoped=True)
            res = s._clone(stmt=stmt)._execute(clause.build_update(stmt, assignments), "SAVE")
            if res.rows_affected == 0:
                res = s._fresh()._create_records([record], 0)
            else:
                s._run_hooks("after_update", record)
        return res

    def update(self, column: str, value: Any) -> Result:
        return self._update({column: value}, "UPDATE")

    def updates(self, values: Mapping[str, Any]) -> Result:
        """Write exactly the given keys, zero values included."""
        if not isinstance(values, Mapping):
            raise ParameterError("updates() takes a mapping; use updates_nonzero() for records")
        return self._update(values, "UPDATES")

    def updates_nonzero(self, record: Any) -> Result:
        """
        Write the non-zero fields of ``record``. An explicit select()/omit() list
        overrides the zero-value skip: listed (or all non-omitted) fields are written.
        """
        if not _is_record(record):
            raise ParameterError("updates_nonzero() takes a record")
        if self.stmt.descriptor is None and self.stmt.table is None:
            return self.model(record)._update(record, "UPDATES")
        return self._update(record, "UPDATES")

    def _assignments(
        self, desc: Descriptor | None, source: Any, touched: list[tuple[Column, Any]] | None = None
    ) -> list[tuple[Column | None, str, Any]]:
        stmt = self.stmt
        clause.check_select_omit(stmt)
        explicit_select = bool(stmt.selects) and stmt.selects != ("*",)
        selected = set(clause.resolve_columns(desc, stmt.selects)) if explicit_select else None
        omitted = set(clause.resolve_columns(desc, stmt.omits))

        out: list[tuple[Column | None, str, Any]] = []
        if isinstance(source, Mapping):
            for key, value in source.items():
                col = desc.lookup(key) if desc is not None else None
                if desc is not None and col is None:
                    raise ParameterError(f"{desc.shape.__name__} has no field or column {key!r}")
                name = col.name if col is not None else key
                if selected is not None and name not in selected:
                    continue
                if name in omitted:
                    continue
                out.append((col, name, value))
        else:
            src = self.describe(source)
            if desc is None:
                desc = src
            for col in src.columns:
                value = src.get(source, col)
                if col.role is Role.UPDATE_TIME:
                    continue
                if selected is not None:
                    if col.name not in selected:
                        continue
                elif stmt.selects == ("*",) or stmt.omits:
                    if col.role in (Role.PRIMARY_KEY, Role.CREATE_TIME, Role.SOFT_DELETE) or col.name in omitted:
                        continue
                elif col.role is Role.PRIMARY_KEY or is_zero(value):
                    continue
                out.append((col, col.name, value))

        # fields changed by before_update hooks; explicit values win
        for col, value in touched or ():
            if any(name == col.name for _, name, _ in out):
                continue
            if (selected is not None and col.name not in selected) or col.name in omitted:
                continue
            out.append((col, col.name, value))

        if desc is not None and desc.update_time is not None and out:
            ut = desc.update_time
            if ut.name not in omitted and all(name != ut.name for _, name, _ in out):
                out.append((ut, ut.name, ut.now()))
        return out

    def _update(self, source: Any, action: str) -> Result:
        desc = self.stmt.descriptor
        if desc is None and self.stmt.table is None:
            raise ParameterError("update needs model() or table()")
        record = self.model_record
        tracked = record is not None and desc is not None and type(record) is desc.shape
        if not tracked and not self._assignments(desc, source):
            return Result()
        stmt = self._target_stmt(action)
        with self._write() as s:
            before = {c.field: desc.get(record, c) for c in desc.columns} if tracked else {}
            s._run_hooks("before_update", record)
            touched: list[tuple[Column, Any]] = []
            if tracked:
                touched = [
                    (c, desc.get(record, c)) for c in desc.columns
                    if c.role not in (Role.PRIMARY_KEY, Role.UPDATE_TIME) and desc.get(record, c) != before[c.field]
                ]
            assignments = self._assignments(desc, source, touched)
            if not assignments:
                return Result()
            encoded = [(name, col.encode(v) if col is not None else v) for col, name, v in assignments]
            res = s._clone(stmt=stmt)._execute(clause.build_update(stmt, encoded), action)
            if tracked:
                for col, _, value in assignments:
                    if col is not None:
                        setattr(record, col.field, value)
            s._run_hooks("after_update", record)
        return res

    # ---------------- Delete ----------------

    def delete(self, value: Any = None, *conds: Any) -> Result:
        """
        Delete by record, by shape plus conditions, or by the current model.
        Soft-delete shapes get their flag set instead, unless ``unscoped()``.
        """
        target = self
        record = None
        if _is_record(value):
            target = self.model(value)
            record = value
        elif _is_shape(value):
            target = self.model(value)
        elif value is not None:
            raise ParameterError(f"delete() takes a record or a shape, got {value!r}")
        else:
            record = self.model_record
        desc = target.stmt.descriptor
        if desc is None:
            raise ParameterError("delete() needs a record, a shape or model()")
        extra = clause.inline_conditions(desc, conds, self.database.naming)
        if extra:
            target = target._clone(stmt=target.stmt.replace(wheres=target.stmt.wheres + tuple(extra)))
        stmt = target._target_stmt("DELETE")

        with target._write() as s:
            s._run_hooks("before_delete", record)
            if desc.soft_delete is not None and not stmt.unscoped:
                flag = desc.soft_delete
                marker = flag.deleted_marker()
                res = s._clone(stmt=stmt)._execute(clause.build_update(stmt, [(flag.name, marker)]), "SOFT_DELETE")
                if record is not None:
                    setattr(record, flag.field, marker)
            else:
                res = s._clone(stmt=stmt)._execute(clause.build_delete(stmt), "DELETE")
            s._run_hooks("after_delete", record)
        return res

    # ---------------- Raw SQL ----------------

    def exec(self, sql: str, *args: Any) -> Result:
        """Run a raw write statement; ``?`` markers bind ``args``."""
        return self._execute(clause.expand_placeholders(sql, args), "EXEC")

    # ---------------- Transactions ----------------

    def begin(self) -> "Session":
        """Start a manual transaction; pair with exactly one commit() or rollback()."""
        if self.tx is not None:
            raise InvalidTransactionStateError("session is already in a transaction; use transaction() to nest")
        return self._clone(stmt=Statement(), model_record=None, tx=Transaction.begin(self.database.pool))

    def _require_tx(self) -> Transaction:
        if self.tx is None:
            raise InvalidTransactionStateError("session is not in a transaction")
        return self.tx

    def commit(self) -> None:
        self._require_tx().commit()

    def rollback(self) -> None:
        self._require_tx().rollback()

    def savepoint(self, name: str) -> None:
        self._require_tx().savepoint(name)

    def rollback_to(self, name: str) -> None:
        self._require_tx().rollback_to(name)

    def transaction(self, fn: Callable[["Session"], T]) -> T:
        """
        Run ``fn(tx)`` atomically: commit when it returns, roll back and re-raise when
        it raises. Inside an existing transaction the unit runs under a savepoint.
        """
        if self.tx is not None:
            tx = self._require_tx()
            name = tx.next_savepoint_name()
            tx.savepoint(name)
            try:
                out = fn(self._fresh())
            except BaseException:
                if tx.is_open:
                    tx.rollback_to(name)
                    tx.release(name)
                raise
            if tx.is_open:
                tx.release(name)
            return out

        bound = self.begin()
        try:
            out = fn(bound)
        except BaseException:
            if bound.tx.is_open:
                bound.tx.rollback()
            raise
        if bound.tx.is_open:
            bound.tx.commit()
        return out

    def __enter__(self) -> "Session":
        self._require_tx().ensure_open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        tx = self._require_tx()
        if not tx.is_open:
            return
        if exc_type is None:
            tx.commit()
        else:
            tx.rollback()

    # ---------------- Schema ----------------

    def migrator(self) -> Migrator:
        return Migrator(self._conn, self.database.naming, self.settings.logging)

    def auto_migrate(self, *shapes: Any) -> list[str]:
        return self.migrator().auto_migrate(*shapes)

    def search_logs(self, q: str | None = None, action: str | None = None, page: int = 1, size: int = 20, **kw):
        """Page through ``operation_log``, newest first; needs ``logging.trace_table``."""
        if not self.settings.logging.trace_table:
            raise ParameterError("statement tracing is off; set logging.trace_table")
        with self._conn() as conn:
            return search_logs(conn, q=q, action=action, page=page, size=size, **kw)

    def close(self) -> None:
        if self.tx is not None and self.tx.is_open:
            raise InvalidTransactionStateError("close() with an open transaction")
        self.database.close()


def open_db(settings: Settings | None = None, dsn: str | None = None) -> Session:
    """Open a database from explicit settings and return the root session."""
    try:
        database = Database(settings, dsn)
    except sqlite3.Error as e:
        raise ExecutionError(f"cannot open database: {e}") from e
    return Session(database)
