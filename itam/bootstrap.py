"""
Startup sequence: pick the storage backend and make sure an admin exists.

Runs once, inside the application lifespan, before the listener serves
requests. Nothing here aborts startup: a failed probe, migration or backend
construction leaves the in-memory backend bound, and a failed admin check
only means there is no default admin.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from itam.config import Settings
from itam.db import EXPECTED_PROBE_TABLE, DatabaseConnector, DatabaseStorage
from itam.errors import AdminBootstrapError, BackendInitError, MigrationError
from itam.event_log import EventLogger, log_safely
from itam.migrate import MigrationRunner
from itam.security import generate_password, hash_password
from itam.storage import StorageHandle, full_permissions

logger = logging.getLogger(__name__)

MODE_DATABASE = "database"
MODE_MEMORY = "memory"


@dataclass
class BootstrapResult:
    mode: str = MODE_MEMORY
    declared: bool = False
    fresh: bool = False
    verified: bool = False
    admin_created: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def using_database(self) -> bool:
        return self.mode == MODE_DATABASE


def should_use_database(
    declared: bool,
    fresh: bool,
    verified: bool,
    url_configured: bool,
    handle_available: bool,
) -> bool:
    """Any one positive connection signal is enough to try the database."""
    return (declared or fresh or verified) and url_configured and handle_available


def ensure_admin_account(
    storage: StorageHandle,
    settings: Settings,
    event_logger: Optional[EventLogger] = None,
    storage_label: str = MODE_MEMORY,
) -> bool:
    """
    Create the default admin account on the active backend if it is absent.
    Returns True when an account was created.
    """
    username = settings.admin_username
    try:
        existing = storage.get_user_by_username(username)
    except Exception as exc:
        raise AdminBootstrapError(f"Admin lookup failed: {exc}") from exc
    if existing is not None:
        logger.info("Default admin user already exists in %s storage", storage_label)
        return False

    password = settings.admin_password
    generated = not password
    if generated:
        password = generate_password()

    logger.info("Creating default admin user...")
    try:
        storage.create_user(
            {
                "username": username,
                "password": hash_password(password),
                "first_name": settings.admin_first_name,
                "last_name": settings.admin_last_name,
                "email": settings.admin_email,
                "is_admin": True,
                "department": "IT",
                "permissions": full_permissions(),
            }
        )
    except Exception as exc:
        raise AdminBootstrapError(f"Admin creation failed: {exc}") from exc

    logger.info(
        "Default admin user created in %s storage: username=%s", storage_label, username
    )
    if generated:
        logger.warning(
            "Generated password for %s: %s (set ITAM_ADMIN_PASSWORD to choose one)",
            username,
            password,
        )
    if event_logger is not None:
        log_safely(
            event_logger.log_system,
            "user_creation",
            {"username": username, "storage": storage_label},
        )
    return True


class Bootstrapper:
    def __init__(
        self,
        settings: Settings,
        storage: StorageHandle,
        connector: DatabaseConnector,
        event_logger: EventLogger,
        migration_runner_factory: Callable[..., MigrationRunner] = MigrationRunner,
        database_storage_factory: Callable[..., DatabaseStorage] = DatabaseStorage,
    ):
        self.settings = settings
        self.storage = storage
        self.connector = connector
        self.event_logger = event_logger
        self.migration_runner_factory = migration_runner_factory
        self.database_storage_factory = database_storage_factory

    async def _call(self, fn, *args, timeout: float):
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)

    async def run(self) -> BootstrapResult:
        logger.info("Starting application initialization...")
        result = BootstrapResult(declared=self.connector.status().declared)

        if self.settings.use_in_memory_backends:
            logger.info("In-memory backends forced by configuration")
        else:
            await self._select_backend(result)

        if result.using_database:
            logger.info("Database storage initialized; data will persist between restarts")
        else:
            logger.warning("Using in-memory storage; data will NOT persist between restarts")

        await asyncio.sleep(self.settings.admin_check_delay_seconds)
        await self._ensure_admin(result)
        return result

    async def _probe(self) -> bool:
        timeout = self.settings.probe_timeout_seconds
        try:
            verified = await self._call(self.connector.probe, timeout=timeout)
        except Exception as exc:
            logger.error("Direct connection test failed: %s", exc)
            return False
        logger.info("Direct connection test result: %s", "SUCCESS" if verified else "FAILED")

        if verified:
            try:
                table_ok = await self._call(
                    self.connector.has_table, EXPECTED_PROBE_TABLE, timeout=timeout
                )
            except Exception as exc:
                logger.warning("%s table check failed: %s", EXPECTED_PROBE_TABLE, exc)
            else:
                if table_ok:
                    logger.info("%s table accessible", EXPECTED_PROBE_TABLE)
                else:
                    logger.warning(
                        "%s table missing or inaccessible", EXPECTED_PROBE_TABLE
                    )
        return verified

    async def _select_backend(self, result: BootstrapResult) -> None:
        settings = self.settings
        if self.connector.configured:
            await self.connector.wait_until_ready(
                timeout=settings.readiness_timeout_seconds,
                initial_backoff=settings.readiness_initial_backoff_seconds,
                max_backoff=settings.readiness_max_backoff_seconds,
                attempt_timeout=settings.probe_timeout_seconds,
            )

        status = self.connector.status()
        result.fresh = status.declared
        url_configured = self.connector.configured
        if url_configured and status.handle_available:
            result.verified = await self._probe()

        if not should_use_database(
            result.declared,
            result.fresh,
            result.verified,
            url_configured,
            status.handle_available,
        ):
            logger.info("Database not available")
            return

        logger.info(
            "Database connection signals: declared=%s fresh=%s verified=%s",
            result.declared,
            result.fresh,
            result.verified,
        )

        try:
            runner = self.migration_runner_factory(status.engine)
            await self._call(runner.run, timeout=settings.migration_timeout_seconds)
        except Exception as exc:
            error = exc if isinstance(exc, MigrationError) else MigrationError(str(exc))
            logger.error("Database migrations failed: %s", error)
            logger.warning("Falling back to in-memory storage")
            result.errors.append(f"migration: {error}")
            return

        try:
            backend = await self._call(
                self.database_storage_factory,
                status.engine,
                timeout=settings.probe_timeout_seconds,
            )
            self.storage.bind(backend)
        except Exception as exc:
            error = exc if isinstance(exc, BackendInitError) else BackendInitError(str(exc))
            logger.error("Failed to initialize database storage: %s", error)
            logger.warning("Falling back to in-memory storage")
            result.errors.append(f"backend: {error}")
            return

        result.mode = MODE_DATABASE

    async def _ensure_admin(self, result: BootstrapResult) -> None:
        logger.info("Checking for default admin user...")
        try:
            result.admin_created = await self._call(
                ensure_admin_account,
                self.storage,
                self.settings,
                self.event_logger,
                result.mode,
                timeout=self.settings.probe_timeout_seconds,
            )
        except Exception as exc:
            error = (
                exc if isinstance(exc, AdminBootstrapError) else AdminBootstrapError(str(exc))
            )
            logger.error("Failed to initialize default admin user: %s", error)
            log_safely(
                self.event_logger.log_system,
                "user_creation_error",
                {"error": str(error)},
            )
            result.errors.append(f"admin: {error}")
