"""
Request logging for API routes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from itam.event_log import EventLogger, log_safely

logger = logging.getLogger(__name__)


def format_api_log_line(
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    body_text: Optional[str],
    limit: int = 80,
) -> str:
    line = f"{method} {path} {status_code} in {duration_ms}ms"
    if body_text:
        line += f" :: {body_text}"
    if len(line) > limit:
        line = line[: limit - 1] + "…"
    return line


class ApiRequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request under the API prefix: a short line on the server log
    and a full entry on the external event log.
    """

    def __init__(
        self,
        app,
        event_logger_getter: Callable[[], EventLogger],
        api_prefix: str = "/api",
        line_limit: int = 80,
    ):
        super().__init__(app)
        self.event_logger_getter = event_logger_getter
        self.api_prefix = api_prefix
        self.line_limit = line_limit

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith(self.api_prefix):
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)

        body_text = None
        body_json = None
        if (response.headers.get("content-type") or "").startswith("application/json"):
            body = b""
            async for chunk in response.body_iterator:
                body += chunk
            response = Response(
                content=body,
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=response.media_type,
                background=response.background,
            )
            body_text = body.decode("utf-8", errors="replace")
            try:
                body_json = json.loads(body_text) if body_text else None
            except ValueError:
                body_json = body_text

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            format_api_log_line(
                request.method,
                path,
                response.status_code,
                int(duration_ms),
                body_text,
                self.line_limit,
            )
        )

        user = getattr(request.state, "user", None)
        client = request.client

        def record_request() -> None:
            self.event_logger_getter().log_api_request(
                request.method,
                path,
                response.status_code,
                duration_ms,
                body_json,
                getattr(user, "id", None),
                getattr(user, "username", None),
                client.host if client else None,
                request.headers.get("user-agent"),
            )

        # File I/O stays off the event loop.
        await asyncio.to_thread(log_safely, record_request)
        return response
