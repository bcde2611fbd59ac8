"""
Process lifecycle helpers: heartbeat events and fault hooks.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from itam.event_log import EventLogger, log_safely

logger = logging.getLogger(__name__)


async def heartbeat_loop(
    event_logger: EventLogger,
    interval: float,
    is_serving: Callable[[], bool] = lambda: True,
) -> None:
    """Write a liveness snapshot every `interval` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            event_logger.log_heartbeat(
                {
                    "activeConnections": "active" if is_serving() else "inactive",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        except Exception as exc:
            logger.error("Heartbeat logging failed: %s", exc)


def start_heartbeat(
    event_logger: EventLogger,
    interval: float,
    is_serving: Callable[[], bool] = lambda: True,
) -> asyncio.Task:
    return asyncio.create_task(
        heartbeat_loop(event_logger, interval, is_serving), name="itam-heartbeat"
    )


def install_fault_hooks(
    event_logger: EventLogger,
    loop: Optional[asyncio.AbstractEventLoop] = None,
) -> Callable[[], None]:
    """
    Record uncaught exceptions as critical events, then hand them to the
    previously installed handler. Returns a callable that restores the
    previous handlers.
    """
    previous_excepthook = sys.excepthook
    previous_thread_hook = threading.excepthook
    previous_loop_handler = loop.get_exception_handler() if loop else None

    def excepthook(exc_type, exc, tb):
        log_safely(event_logger.log_critical, "Uncaught Exception", exc, "process")
        previous_excepthook(exc_type, exc, tb)

    def thread_excepthook(args):
        log_safely(
            event_logger.log_critical, "Uncaught Thread Exception", args.exc_value, "thread"
        )
        previous_thread_hook(args)

    def loop_exception_handler(current_loop, context):
        error = context.get("exception")
        if error is None:
            error = RuntimeError(context.get("message", "unknown asyncio error"))
        log_safely(event_logger.log_critical, "Unhandled Rejection", error, "asyncio")
        if previous_loop_handler is not None:
            previous_loop_handler(current_loop, context)
        else:
            current_loop.default_exception_handler(context)

    sys.excepthook = excepthook
    threading.excepthook = thread_excepthook
    if loop is not None:
        loop.set_exception_handler(loop_exception_handler)

    def uninstall() -> None:
        sys.excepthook = previous_excepthook
        threading.excepthook = previous_thread_hook
        if loop is not None:
            loop.set_exception_handler(previous_loop_handler)

    return uninstall
