from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Optional

from ..config import LoggingConfig
from ..domain.clause import Expr
from ..errors import ExecutionError
from ..logs import StatementLog


@dataclass
class Result:
    rows_affected: int = 0
    last_insert_id: Optional[int] = None


def _run(
    conn: sqlite3.Connection,
    expr: Expr,
    action: str,
    table: str | None,
    log_cfg: LoggingConfig | None,
) -> tuple[sqlite3.Cursor, StatementLog]:
    log = StatementLog(action, table, log_cfg)
    log.set_statement(expr.sql, expr.params)
    try:
        cur = conn.execute(expr.sql, expr.params)
    except sqlite3.Error as e:
        log.write("ERROR", str(e), conn)
        raise ExecutionError(f"{action} failed: {e}", expr.sql, expr.params) from e
    return cur, log


def execute(
    conn: sqlite3.Connection,
    expr: Expr,
    action: str = "EXEC",
    table: str | None = None,
    log_cfg: LoggingConfig | None = None,
) -> Result:
    """Run one write statement; reports affected rows and the last rowid."""
    cur, log = _run(conn, expr, action, table, log_cfg)
    rows = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else 0
    log.set_rows(rows)
    log.write("OK", conn=conn)
    return Result(rows_affected=rows, last_insert_id=cur.lastrowid)


def fetch_all(
    conn: sqlite3.Connection,
    expr: Expr,
    action: str = "QUERY",
    table: str | None = None,
    log_cfg: LoggingConfig | None = None,
) -> list[sqlite3.Row]:
    cur, log = _run(conn, expr, action, table, log_cfg)
    try:
        rows = cur.fetchall()
    except sqlite3.Error as e:
        log.write("ERROR", str(e), conn)
        raise ExecutionError(f"{action} failed: {e}", expr.sql, expr.params) from e
    log.set_rows(len(rows))
    log.write("OK", conn=conn)
    return rows
