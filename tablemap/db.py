from __future__ import annotations

# tablemap/db.py
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator

from .config import Settings
from .domain.naming import NamingStrategy
from .domain.schema import Descriptor, describe
from .errors import InvalidTransactionStateError
from .logs import ensure_log_schema

logger = logging.getLogger(__name__)

# DSN 解析顺序：
# 1) 环境变量 TABLEMAP_DSN（最高优先级）
# 2) 配置中的 database.test_dsn（当检测到测试环境时）
# 3) 配置中的 database.dsn（生产默认）
# 4) 兜底：当前目录下的 tablemap.db
DSN_ENV = "TABLEMAP_DSN"
FALLBACK_DSN = "sqlite:///tablemap.db"
MEMORY = ":memory:"


def _is_test_env() -> bool:
    return (os.environ.get("APP_ENV") == "test") or (os.environ.get("PYTEST_CURRENT_TEST") is not None)


def resolve_dsn(settings: Settings | None = None) -> str:
    env_dsn = os.environ.get(DSN_ENV)
    cfg = settings.database if settings is not None else None
    if env_dsn:
        return env_dsn
    if cfg is not None and _is_test_env() and cfg.test_dsn:
        return cfg.test_dsn
    if cfg is not None and cfg.dsn:
        return cfg.dsn
    return FALLBACK_DSN


def parse_dsn(dsn: str) -> tuple[str, bool]:
    """
    Turn a DSN into ``(database, uri)`` arguments for ``sqlite3.connect``.

    Accepts ``sqlite:///relative.db``, ``sqlite:////abs/path.db``,
    ``sqlite://:memory:``, ``:memory:``, ``file:`` URIs and plain paths.
    """
    dsn = (dsn or "").strip()
    if not dsn:
        raise ValueError("empty dsn")
    if dsn.startswith("sqlite://"):
        rest = dsn[len("sqlite://"):]
        if rest in (MEMORY, "/" + MEMORY, ""):
            return MEMORY, False
        # sqlite:///x.db -> x.db ; sqlite:////abs/x.db -> /abs/x.db
        return rest[1:] if rest.startswith("/") else rest, False
    if dsn.startswith("file:"):
        return dsn, True
    return dsn, False


def open_connection(database: str, uri: bool = False, busy_timeout: float = 5.0) -> sqlite3.Connection:
    """
    Open a SQLite connection in autocommit mode; BEGIN/COMMIT are issued explicitly
    by the transaction layer. foreign_keys is on and rows come back as sqlite3.Row.
    """
    if database != MEMORY and not uri:
        dirn = os.path.dirname(database)
        if dirn:
            os.makedirs(dirn, exist_ok=True)
    conn = sqlite3.connect(
        database,
        uri=uri,
        timeout=busy_timeout,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def get_conn(dsn: str) -> Iterator[sqlite3.Connection]:
    """
    Maintenance helper: a one-off connection outside any pool, for scripts and
    test assertions that inspect a database file directly. Sessions never use it.
    """
    database, uri = parse_dsn(dsn)
    conn = open_connection(database, uri)
    try:
        yield conn
    finally:
        conn.close()


class ConnectionPool:
    """
    Small pool of SQLite connections.

    An in-memory database only exists inside its connection, so ``:memory:``
    is served by a single shared connection guarded by a re-entrant lock.
    """

    def __init__(self, dsn: str, max_idle: int = 4, busy_timeout: float = 5.0):
        self.dsn = dsn
        self.database, self.uri = parse_dsn(dsn)
        self.memory = self.database == MEMORY
        self.max_idle = max_idle
        self.busy_timeout = busy_timeout
        self.closed = False
        self._idle: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._shared: sqlite3.Connection | None = None
        self._shared_lock = threading.RLock()
        # connections held by an open Transaction
        self._owned: set[int] = set()

    def _open(self) -> sqlite3.Connection:
        logger.debug("opening sqlite connection to %s", self.database)
        return open_connection(self.database, self.uri, self.busy_timeout)

    def checkout(self) -> sqlite3.Connection:
        if self.closed:
            raise RuntimeError("connection pool is closed")
        if self.memory:
            self._shared_lock.acquire()
            if self._shared is None:
                self._shared = self._open()
            if id(self._shared) in self._owned:
                # other threads block on the lock; this thread already holds the transaction
                self._shared_lock.release()
                raise InvalidTransactionStateError(
                    "in-memory database is held by an open transaction; run through that transaction"
                )
            return self._shared
        with self._lock:
            if self._idle:
                return self._idle.pop()
        return self._open()

    def claim(self, conn: sqlite3.Connection) -> None:
        """Mark ``conn`` as held by an open transaction until :meth:`disown`."""
        self._owned.add(id(conn))

    def disown(self, conn: sqlite3.Connection) -> None:
        self._owned.discard(id(conn))

    def release(self, conn: sqlite3.Connection) -> None:
        if id(conn) in self._owned:
            raise InvalidTransactionStateError("connection is still held by an open transaction")
        if conn.in_transaction:
            # 未结束的事务不允许泄漏给下一个使用者
            logger.warning("connection returned with an open transaction; rolling back")
            conn.rollback()
        if self.memory:
            self._shared_lock.release()
            return
        with self._lock:
            if not self.closed and len(self._idle) < self.max_idle:
                self._idle.append(conn)
                return
        conn.close()

    @contextmanager
    def acquire(self) -> Iterator[sqlite3.Connection]:
        conn = self.checkout()
        try:
            yield conn
        finally:
            self.release(conn)

    def close(self) -> None:
        with self._lock:
            self.closed = True
            idle, self._idle = self._idle, []
        for conn in idle:
            conn.close()
        with self._shared_lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None


class Database:
    """Process-side handle: resolved settings, naming strategy and the pool."""

    def __init__(self, settings: Settings | None = None, dsn: str | None = None):
        self.settings = settings or Settings()
        self.dsn = dsn or resolve_dsn(self.settings)
        cfg = self.settings.database
        self.pool = ConnectionPool(self.dsn, cfg.max_idle_conns, cfg.busy_timeout)
        self.naming = NamingStrategy.from_config(self.settings.naming)
        if self.settings.logging.trace_table:
            with self.pool.acquire() as conn:
                ensure_log_schema(conn)
        logger.info("database opened: %s", self.dsn)

    def describe(self, shape) -> Descriptor:
        return describe(shape, self.naming)

    def close(self) -> None:
        self.pool.close()
