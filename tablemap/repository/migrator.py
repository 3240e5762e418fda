"""
Schema migration for reflected record shapes.

Only additive changes are made: tables are created when missing and, in
reconcile mode, missing columns are added. Columns are never dropped or
retyped. A multi-statement migration runs inside one transaction and the
statement that failed is reported on the raised ``MigrationError``.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import AbstractContextManager, contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterator

from ..config import LoggingConfig
from ..domain.clause import quote
from ..domain.naming import NamingStrategy
from ..domain.schema import Column, Descriptor, Role, describe
from ..errors import MigrationError
from ..logs import StatementLog

logger = logging.getLogger(__name__)


def _literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        value = value.isoformat()
    return "'" + str(value).replace("'", "''") + "'"


def column_ddl(col: Column) -> str:
    parts = [quote(col.name), col.sql_type()]
    if col.auto_increment:
        parts.append("PRIMARY KEY AUTOINCREMENT")
    elif col.role is Role.PRIMARY_KEY:
        parts.append("PRIMARY KEY")
    if col.not_null:
        parts.append("NOT NULL")
    if col.unique:
        parts.append("UNIQUE")
    if col.db_default is not None:
        parts.append(f"DEFAULT {_literal(col.db_default)}")
    elif col.soft_delete_mode is not None:
        parts.append("DEFAULT 0")
    return " ".join(parts)


def index_name(desc: Descriptor, col: Column) -> str:
    return f"idx_{desc.table}_{col.name}"


def index_statement(desc: Descriptor, col: Column) -> str:
    return f"CREATE INDEX IF NOT EXISTS {quote(index_name(desc, col))} ON {quote(desc.table)} ({quote(col.name)})"


def create_table_statements(desc: Descriptor) -> list[str]:
    cols = ",\n  ".join(column_ddl(c) for c in desc.columns)
    stmts = [f"CREATE TABLE {quote(desc.table)} (\n  {cols}\n)"]
    stmts.extend(index_statement(desc, c) for c in desc.columns if c.index)
    return stmts


def add_column_statement(desc: Descriptor, col: Column) -> str:
    return f"ALTER TABLE {quote(desc.table)} ADD COLUMN {column_ddl(col)}"


def has_table(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def column_names(conn: sqlite3.Connection, table: str) -> list[str]:
    return [r[1] for r in conn.execute(f"PRAGMA table_info({quote(table)})").fetchall()]


def apply_statements(
    conn: sqlite3.Connection,
    statements: list[str],
    log_cfg: LoggingConfig | None = None,
) -> None:
    """Run DDL atomically; nested inside a caller's transaction via a savepoint."""
    if not statements:
        return
    nested = conn.in_transaction
    conn.execute("SAVEPOINT tablemap_migrate" if nested else "BEGIN")
    try:
        for sql in statements:
            log = StatementLog("MIGRATE", None, log_cfg)
            log.set_statement(sql)
            try:
                conn.execute(sql)
            except sqlite3.Error as e:
                log.write("ERROR", str(e))
                raise MigrationError(f"migration statement failed: {e}", sql) from e
            log.write("OK")
    except BaseException:
        if nested:
            conn.execute("ROLLBACK TO SAVEPOINT tablemap_migrate")
            conn.execute("RELEASE SAVEPOINT tablemap_migrate")
        else:
            conn.execute("ROLLBACK")
        raise
    conn.execute("RELEASE SAVEPOINT tablemap_migrate" if nested else "COMMIT")


def ensure_table(
    conn: sqlite3.Connection,
    desc: Descriptor,
    reconcile: bool = False,
    log_cfg: LoggingConfig | None = None,
) -> list[str]:
    """
    Create ``desc.table`` when absent. With ``reconcile`` an existing table
    gets its missing columns (and indexes) added. Returns the DDL applied,
    which is empty when the schema already matched.
    """
    if not has_table(conn, desc.table):
        stmts = create_table_statements(desc)
    elif reconcile:
        existing = set(column_names(conn, desc.table))
        stmts = [add_column_statement(desc, c) for c in desc.columns if c.name not in existing]
        indexed = {
            r[1] for r in conn.execute(
                "SELECT type, name FROM sqlite_master WHERE type='index' AND tbl_name=?", (desc.table,)
            ).fetchall()
        }
        stmts.extend(
            index_statement(desc, c) for c in desc.columns if c.index and index_name(desc, c) not in indexed
        )
    else:
        stmts = []
    if stmts:
        logger.info("migrating %s: %d statement(s)", desc.table, len(stmts))
    apply_statements(conn, stmts, log_cfg)
    return stmts


class Migrator:
    """Shape-level migration API bound to a connection source."""

    def __init__(
        self,
        acquire: Callable[[], AbstractContextManager[sqlite3.Connection]],
        naming: NamingStrategy | None = None,
        log_cfg: LoggingConfig | None = None,
    ):
        self._acquire = acquire
        self.naming = naming or NamingStrategy()
        self.log_cfg = log_cfg

    def _table(self, target: Any) -> str:
        return target if isinstance(target, str) else describe(target, self.naming).table

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._acquire() as conn:
                yield conn
        except sqlite3.Error as e:
            raise MigrationError(f"migration failed: {e}") from e

    def has_table(self, target: Any) -> bool:
        with self._connect() as conn:
            return has_table(conn, self._table(target))

    def column_names(self, target: Any) -> list[str]:
        with self._connect() as conn:
            return column_names(conn, self._table(target))

    def has_column(self, target: Any, name: str) -> bool:
        if not isinstance(target, str):
            col = describe(target, self.naming).lookup(name)
            name = col.name if col is not None else name
        return name in self.column_names(target)

    def create_table(self, *shapes: Any) -> None:
        with self._connect() as conn:
            stmts: list[str] = []
            for shape in shapes:
                stmts.extend(create_table_statements(describe(shape, self.naming)))
            apply_statements(conn, stmts, self.log_cfg)

    def drop_table(self, *targets: Any, if_exists: bool = True) -> None:
        guard = "IF EXISTS " if if_exists else ""
        with self._connect() as conn:
            apply_statements(conn, [f"DROP TABLE {guard}{quote(self._table(t))}" for t in targets], self.log_cfg)

    def add_column(self, shape: Any, field: str) -> None:
        desc = describe(shape, self.naming)
        col = desc.column_for(field)
        with self._connect() as conn:
            apply_statements(conn, [add_column_statement(desc, col)], self.log_cfg)

    def ensure_table(self, shape: Any, reconcile: bool = False) -> list[str]:
        with self._connect() as conn:
            return ensure_table(conn, describe(shape, self.naming), reconcile, self.log_cfg)

    def auto_migrate(self, *shapes: Any) -> list[str]:
        applied: list[str] = []
        for shape in shapes:
            applied.extend(self.ensure_table(shape, reconcile=True))
        return applied
