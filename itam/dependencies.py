"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import functools
from typing import Callable

from itam.config import get_settings
from itam.db import DatabaseConnector
from itam.event_log import EventLogger
from itam.monitoring.models import MonitoringConfig
from itam.monitoring.zabbix import ZabbixClient
from itam.storage import InMemoryStorage, StorageHandle

_storage: StorageHandle | None = None
_connector: DatabaseConnector | None = None
_event_logger: EventLogger | None = None


def get_storage() -> StorageHandle:
    """
    Return the shared storage handle. It starts bound to the in-memory
    backend; the bootstrap may rebind it to the database once at startup.
    """
    global _storage
    if _storage:
        return _storage
    _storage = StorageHandle(InMemoryStorage())
    return _storage


def get_connector() -> DatabaseConnector:
    global _connector
    if _connector:
        return _connector
    settings = get_settings()
    _connector = DatabaseConnector(settings.database_url)
    return _connector


def get_event_logger() -> EventLogger:
    global _event_logger
    if _event_logger:
        return _event_logger
    settings = get_settings()
    _event_logger = EventLogger(
        settings.log_dir,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
        body_limit=settings.api_log_body_limit,
    )
    return _event_logger


def reset_dependencies() -> None:
    """Drop cached singletons (useful in tests)."""
    global _storage, _connector, _event_logger
    if _connector is not None:
        _connector.dispose()
    if _event_logger is not None:
        _event_logger.close()
    _storage = None
    _connector = None
    _event_logger = None


def get_zabbix_client_factory() -> Callable[[MonitoringConfig], ZabbixClient]:
    """Return a callable building a Zabbix client for a request's config."""
    settings = get_settings()
    return functools.partial(
        ZabbixClient.from_config, timeout=settings.zabbix_timeout_seconds
    )
