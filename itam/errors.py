"""
Exception types shared across the service.
"""

from __future__ import annotations


class BootstrapError(Exception):
    """Base class for failures the startup sequence downgrades."""


class DatabaseConnectionError(BootstrapError):
    """The durable backend could not be reached."""


class MigrationError(BootstrapError):
    """A schema migration failed to apply."""

    def __init__(self, message: str, migration: str | None = None):
        super().__init__(message)
        self.migration = migration


class BackendInitError(BootstrapError):
    """The durable storage backend could not be constructed."""


class AdminBootstrapError(BootstrapError):
    """The default admin account could not be looked up or created."""


class LoggingError(Exception):
    """An external event log entry could not be written."""


class StorageError(Exception):
    pass


class RecordNotFoundError(StorageError):
    def __init__(self, kind: str, record_id: int):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class DuplicateRecordError(StorageError):
    pass


class InvalidRecordError(StorageError):
    """A write would leave a required field empty."""
