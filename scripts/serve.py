"""
Run the asset-management API under uvicorn.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import uvicorn
from pydantic import ValidationError

from itam.app import create_app
from itam.config import get_settings
from itam.dependencies import get_event_logger
from itam.event_log import EventLogger, log_safely

logger = logging.getLogger(__name__)


class LoggingServer(uvicorn.Server):
    """uvicorn server that records signal-triggered shutdowns."""

    def __init__(self, config: uvicorn.Config, event_logger: EventLogger):
        super().__init__(config)
        self.event_logger = event_logger

    def handle_exit(self, sig, frame) -> None:
        try:
            reason = signal.Signals(sig).name
        except ValueError:
            reason = str(sig)
        log_safely(
            self.event_logger.log_lifecycle,
            "shutdown",
            {"reason": reason, "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        super().handle_exit(sig, frame)


def main() -> int:
    parser = argparse.ArgumentParser(description="IT asset-management API server")
    parser.add_argument("--host", type=str, default=None, help="Override bind host")
    parser.add_argument("--port", type=int, default=None, help="Override bind port")
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    try:
        settings = get_settings()
    except ValidationError as exc:
        logger.critical("Invalid configuration: %s", exc)
        fallback_logger = EventLogger(os.environ.get("ITAM_LOG_DIR", "logs"))
        log_safely(fallback_logger.log_critical, "Configuration load failed", exc, "startup")
        return 1

    event_logger = get_event_logger()
    host = args.host or settings.host
    port = args.port or settings.port
    config = uvicorn.Config(
        create_app(), host=host, port=port, log_level=args.log_level
    )
    server = LoggingServer(config, event_logger)

    logger.info("Starting server on http://%s:%d", host, port)
    try:
        server.run()
    except (OSError, SystemExit) as exc:
        if isinstance(exc, SystemExit) and not exc.code:
            raise
        logger.critical("Failed to start server: %s", exc)
        log_safely(event_logger.log_critical, "Server startup failed", exc, "startup")
        return 1

    if not server.started:
        logger.critical("Server did not start")
        log_safely(
            event_logger.log_critical,
            "Server startup failed",
            RuntimeError(f"could not serve on {host}:{port}"),
            "startup",
        )
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
