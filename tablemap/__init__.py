"""tablemap: a small record-to-table mapper over SQLite.

    from tablemap import open_db, load_settings

    db = open_db(load_settings())
    db.auto_migrate(User)
    db.create(User(name="jinzhu"))
"""
from __future__ import annotations

from .config import Settings, load_settings
from .db import resolve_dsn
from .domain.schema import clear_hooks, column, describe, register_hook
from .errors import (
    ConfigError,
    ExecutionError,
    InvalidTransactionStateError,
    MigrationError,
    MissingFilterError,
    ParameterError,
    RecordNotFound,
    SchemaError,
    TableMapError,
)
from .repository.executor import Result
from .services.session import Session, open_db

__all__ = [
    "Settings",
    "load_settings",
    "resolve_dsn",
    "column",
    "describe",
    "register_hook",
    "clear_hooks",
    "Result",
    "Session",
    "open_db",
    "TableMapError",
    "ConfigError",
    "SchemaError",
    "ParameterError",
    "MissingFilterError",
    "RecordNotFound",
    "InvalidTransactionStateError",
    "ExecutionError",
    "MigrationError",
]
