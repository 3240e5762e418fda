from __future__ import annotations

import enum
import logging
import re
import sqlite3
import uuid

from ..db import ConnectionPool
from ..errors import ExecutionError, InvalidTransactionStateError, ParameterError

logger = logging.getLogger(__name__)

_SAVEPOINT_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class TxState(str, enum.Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class Transaction:
    """
    One connection, one atomic unit. Open -> (commit | rollback) -> closed;
    nothing leaves the closed states. Owned by a single caller.
    """

    def __init__(self, pool: ConnectionPool, conn: sqlite3.Connection):
        self.id = uuid.uuid4().hex[:12]
        self.state = TxState.OPEN
        self._pool = pool
        self._conn: sqlite3.Connection | None = conn
        self._savepoints: list[str] = []

    @classmethod
    def begin(cls, pool: ConnectionPool) -> "Transaction":
        conn = pool.checkout()
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            pool.release(conn)
            raise ExecutionError(f"BEGIN failed: {e}", "BEGIN") from e
        pool.claim(conn)
        tx = cls(pool, conn)
        logger.debug("tx %s begin", tx.id)
        return tx

    @property
    def is_open(self) -> bool:
        return self.state is TxState.OPEN

    def ensure_open(self) -> None:
        if self.state is not TxState.OPEN:
            raise InvalidTransactionStateError(f"transaction {self.id} is already {self.state.value}")

    @property
    def conn(self) -> sqlite3.Connection:
        self.ensure_open()
        assert self._conn is not None
        return self._conn

    def _close(self, state: TxState) -> None:
        conn, self._conn = self._conn, None
        self.state = state
        self._savepoints.clear()
        if conn is not None:
            self._pool.disown(conn)
            self._pool.release(conn)
        logger.debug("tx %s %s", self.id, state.value)

    def commit(self) -> None:
        conn = self.conn
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self._close(TxState.ROLLED_BACK)
            raise ExecutionError(f"COMMIT failed: {e}", "COMMIT") from e
        self._close(TxState.COMMITTED)

    def rollback(self) -> None:
        conn = self.conn
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            self._close(TxState.ROLLED_BACK)
            raise ExecutionError(f"ROLLBACK failed: {e}", "ROLLBACK") from e
        self._close(TxState.ROLLED_BACK)

    def savepoint(self, name: str) -> None:
        if not _SAVEPOINT_NAME.match(name):
            raise ParameterError(f"bad savepoint name {name!r}")
        self.conn.execute(f"SAVEPOINT {name}")
        self._savepoints.append(name)

    def rollback_to(self, name: str) -> None:
        if name not in self._savepoints:
            raise ParameterError(f"unknown savepoint {name!r}")
        self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        # savepoints created after this one are gone
        del self._savepoints[self._savepoints.index(name) + 1:]

    def release(self, name: str) -> None:
        if name not in self._savepoints:
            raise ParameterError(f"unknown savepoint {name!r}")
        self.conn.execute(f"RELEASE SAVEPOINT {name}")
        del self._savepoints[self._savepoints.index(name):]

    def next_savepoint_name(self) -> str:
        return f"sp_{self.id}_{len(self._savepoints) + 1}"
