from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
import time
import uuid
from typing import Any, Optional

from .config import LoggingConfig

logger = logging.getLogger("tablemap.sql")

DDL = """
CREATE TABLE IF NOT EXISTS operation_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  action TEXT NOT NULL,
  entity_type TEXT,
  request_id TEXT,
  sql_text TEXT,
  params_json TEXT,
  rows_affected INTEGER,
  result TEXT,
  err_msg TEXT,
  latency_ms INTEGER
);
CREATE INDEX IF NOT EXISTS idx_log_ts ON operation_log(ts);
CREATE INDEX IF NOT EXISTS idx_log_action ON operation_log(action);
"""


def ensure_log_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(DDL)


def _jsonable(params: Any) -> str | None:
    if params is None:
        return None
    return json.dumps(list(params), ensure_ascii=False, default=str)


class StatementLog:
    """Timing and outcome of one statement; written once via :meth:`write`."""

    def __init__(self, action: str, table: str | None = None, cfg: LoggingConfig | None = None):
        self.action = action
        self.table = table
        self.cfg = cfg or LoggingConfig()
        self.request_id = str(uuid.uuid4())
        self.start = time.perf_counter()
        self.sql: str | None = None
        self.params: tuple = ()
        self.rows: int = -1

    def set_statement(self, sql: str, params: Any = ()):
        self.sql = sql
        self.params = tuple(params or ())

    def set_rows(self, rows: int):
        self.rows = rows

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start) * 1000

    def record(self, result: str, err: Optional[str] = None) -> dict[str, Any]:
        return {
            "ts": dt.datetime.now(dt.timezone.utc).isoformat(),
            "action": self.action,
            "entity_type": self.table,
            "request_id": self.request_id,
            "sql_text": self.sql,
            "params_json": _jsonable(self.params),
            "rows_affected": self.rows,
            "result": result,
            "err_msg": err,
            "latency_ms": int(self.elapsed_ms),
        }

    def write(self, result: str = "OK", err: Optional[str] = None, conn: sqlite3.Connection | None = None):
        elapsed = self.elapsed_ms
        if err is not None:
            logger.error("[%.3fms] [rows:%d] %s %s -- %s", elapsed, self.rows, self.sql, self.params, err)
        elif self.cfg.slow_threshold_ms and elapsed > self.cfg.slow_threshold_ms:
            logger.warning("SLOW SQL >= %dms [%.3fms] [rows:%d] %s %s",
                           self.cfg.slow_threshold_ms, elapsed, self.rows, self.sql, self.params)
        else:
            logger.debug("[%.3fms] [rows:%d] %s %s", elapsed, self.rows, self.sql, self.params)

        if self.cfg.trace_table and conn is not None:
            conn.execute(
                """INSERT INTO operation_log
                (ts,action,entity_type,request_id,sql_text,params_json,rows_affected,result,err_msg,latency_ms)
                VALUES(:ts,:action,:entity_type,:request_id,:sql_text,:params_json,:rows_affected,:result,:err_msg,:latency_ms)""",
                self.record(result, err),
            )


def search_logs(
    conn: sqlite3.Connection,
    q: str | None = None,
    action: str | None = None,
    ts_from: str | None = None,
    ts_to: str | None = None,
    page: int = 1,
    size: int = 20,
):
    where = []
    params: dict[str, Any] = {}
    if q:
        where.append("(sql_text LIKE :q OR params_json LIKE :q OR err_msg LIKE :q)")
        params["q"] = f"%{q}%"
    if action:
        where.append("action = :action")
        params["action"] = action
    if ts_from:
        where.append("ts >= :from")
        params["from"] = ts_from
    if ts_to:
        where.append("ts <= :to")
        params["to"] = ts_to
    wh = " WHERE " + " AND ".join(where) if where else ""
    sql = f"SELECT * FROM operation_log{wh} ORDER BY id DESC LIMIT :limit OFFSET :offset"
    count_sql = f"SELECT COUNT(1) AS cnt FROM operation_log{wh}"
    total = conn.execute(count_sql, params).fetchone()["cnt"]
    rows = conn.execute(sql, {**params, "limit": size, "offset": (page - 1) * size}).fetchall()
    return total, [dict(r) for r in rows]
