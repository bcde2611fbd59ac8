"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
import sys
from datetime import datetime, timezone

from fastapi import FastAPI

from itam.bootstrap import Bootstrapper
from itam.config import get_settings
from itam.dependencies import (
    get_connector,
    get_event_logger,
    get_storage,
)
from itam.event_log import log_safely
from itam.lifecycle import install_fault_hooks, start_heartbeat
from itam.middleware import ApiRequestLoggingMiddleware
from itam.monitoring.routes import router as monitoring_router
from itam.routes import router

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    event_logger = get_event_logger()
    uninstall_hooks = install_fault_hooks(event_logger, asyncio.get_running_loop())

    bootstrapper = Bootstrapper(settings, get_storage(), get_connector(), event_logger)
    result = await bootstrapper.run()
    app.state.bootstrap_result = result

    log_safely(
        event_logger.log_system,
        "server_startup",
        {
            "port": settings.port,
            "databaseType": "PostgreSQL" if result.using_database else "Memory",
            "environment": settings.environment,
            "startupTime": datetime.now(timezone.utc).isoformat(),
        },
    )
    log_safely(
        event_logger.log_lifecycle,
        "startup",
        {
            "port": settings.port,
            "environment": settings.environment,
            "pythonVersion": platform.python_version(),
            "platform": sys.platform,
        },
    )
    logger.info("Logs directory: %s", settings.log_dir)

    heartbeat = start_heartbeat(event_logger, settings.heartbeat_interval_seconds)
    try:
        yield
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        uninstall_hooks()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="IT Asset Management", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        ApiRequestLoggingMiddleware,
        event_logger_getter=get_event_logger,
        api_prefix=settings.api_prefix,
        line_limit=settings.api_log_line_limit,
    )
    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(monitoring_router, prefix=settings.api_prefix)
    return app
