"""
External event log.

A side channel that records lifecycle, system, API request, heartbeat and
critical events as JSON lines under the log directory, one rotating file per
category. Writing is best-effort: call sites go through `log_safely`, so a
failed write is reported on the diagnostic logger and never reaches the
operation being logged.
"""

from __future__ import annotations

import json
import logging
import os
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

from itam.errors import LoggingError

logger = logging.getLogger(__name__)

LOG_FILES = {
    "lifecycle": "lifecycle.log",
    "system": "system.log",
    "api_request": "api-requests.log",
    "heartbeat": "heartbeat.log",
    "critical": "critical.log",
}


class _JsonLinesHandler(RotatingFileHandler):
    """Rotating handler that lets write errors propagate to the caller."""

    def handleError(self, record):
        raise


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: max(limit - 1, 0)] + "…"


class EventLogger:
    def __init__(
        self,
        log_dir: str | os.PathLike = "logs",
        *,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        body_limit: int = 2000,
    ):
        self.log_dir = Path(log_dir)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.body_limit = body_limit
        self._handlers: dict[str, RotatingFileHandler] = {}

    def path_for(self, category: str) -> Path:
        return self.log_dir / LOG_FILES[category]

    def _handler(self, category: str) -> RotatingFileHandler:
        handler = self._handlers.get(category)
        if handler is None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handler = _JsonLinesHandler(
                self.path_for(category),
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._handlers[category] = handler
        return handler

    def _write(self, category: str, level: int, payload: dict) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "category": category,
            "level": logging.getLevelName(level),
            **payload,
        }
        try:
            line = json.dumps(entry, default=str, ensure_ascii=False)
            record = logging.makeLogRecord(
                {
                    "name": f"itam.events.{category}",
                    "msg": line,
                    "levelno": level,
                    "levelname": logging.getLevelName(level),
                }
            )
            self._handler(category).handle(record)
        except Exception as exc:
            raise LoggingError(f"Could not write {category} event: {exc}") from exc

    def log_lifecycle(self, event: str, details: Optional[dict] = None) -> None:
        self._write(
            "lifecycle", logging.INFO, {"event": event, "details": details or {}}
        )

    def log_system(self, event: str, details: Optional[dict] = None) -> None:
        self._write("system", logging.INFO, {"event": event, "details": details or {}})

    def log_api_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
        response_body: Any = None,
        user_id: Optional[int] = None,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        body = None
        if response_body is not None:
            if not isinstance(response_body, str):
                response_body = json.dumps(response_body, default=str)
            body = _truncate(response_body, self.body_limit)
        level = logging.ERROR if status_code >= 500 else (
            logging.WARNING if status_code >= 400 else logging.INFO
        )
        self._write(
            "api_request",
            level,
            {
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
                "response_body": body,
                "user_id": user_id,
                "username": username,
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )

    def log_heartbeat(self, details: Optional[dict] = None) -> None:
        self._write("heartbeat", logging.INFO, {"details": details or {}})

    def log_critical(
        self, message: str, error: Optional[BaseException], origin: str
    ) -> None:
        error_info = None
        if error is not None:
            error_info = {
                "type": type(error).__name__,
                "message": str(error),
                "traceback": "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                ),
            }
        self._write(
            "critical",
            logging.CRITICAL,
            {"message": message, "origin": origin, "error": error_info},
        )

    def close(self) -> None:
        for handler in self._handlers.values():
            handler.close()
        self._handlers.clear()


def log_safely(fn: Callable[..., Any], *args, **kwargs) -> None:
    """Call an EventLogger method, reporting any failure locally only."""
    try:
        fn(*args, **kwargs)
    except Exception as exc:
        logger.error("Failed to write external log entry: %s", exc)
