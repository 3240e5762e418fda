from __future__ import annotations


class TableMapError(Exception):
    """Base class for every error raised by tablemap."""


class ConfigError(TableMapError):
    pass


class SchemaError(TableMapError, ValueError):
    """A record shape violates a descriptor invariant."""


class ParameterError(TableMapError, ValueError):
    """Conflicting or unusable call parameters (e.g. select + omit)."""


class MissingFilterError(TableMapError):
    """Batch update/delete without a WHERE clause and global update disabled."""

    def __init__(self, action: str, table: str | None = None):
        self.action = action
        self.table = table
        where = f" on {table}" if table else ""
        super().__init__(f"{action}{where} has no conditions; enable allow_global_update to run it")


class RecordNotFound(TableMapError, LookupError):
    """A fetch-one operation matched zero rows."""


class InvalidTransactionStateError(TableMapError):
    pass


class ExecutionError(TableMapError):
    """Driver, connection or constraint failure while running a statement."""

    def __init__(self, message: str, statement: str | None = None, params=None):
        self.statement = statement
        self.params = params
        super().__init__(message)


class MigrationError(ExecutionError):
    """DDL rejected by the database; ``statement`` names the failing one."""
