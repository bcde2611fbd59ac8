"""
Client side of server monitoring.

Holds the user's Zabbix configuration in a local JSON file, saves it only
after the server confirms it can connect, and fetches metric snapshots with
the dashboard's retry and polling policy.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from pydantic import ValidationError

from itam.monitoring.models import MonitoringConfig, ServerMetrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
MAX_RETRY_DELAY_SECONDS = 30.0
AUTH_ERROR_MARKERS = ("Authentication", "401")


class DashboardError(Exception):
    pass


def should_retry(failure_count: int, error: BaseException) -> bool:
    """Authentication failures are final; anything else gets three retries."""
    message = str(error)
    if any(marker in message for marker in AUTH_ERROR_MARKERS):
        return False
    return failure_count < MAX_RETRIES


def retry_delay(attempt_index: int) -> float:
    return min(1.0 * 2**attempt_index, MAX_RETRY_DELAY_SECONDS)


class ConfigStore:
    """JSON file holding the saved monitoring configuration."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def load_raw(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load saved config: %s", exc)
            return {}
        return data if isinstance(data, dict) else {}

    def load(self) -> Optional[MonitoringConfig]:
        raw = self.load_raw()
        if not raw:
            return None
        try:
            return MonitoringConfig.model_validate(raw)
        except ValidationError as exc:
            logger.error("Saved config is invalid: %s", exc)
            return None

    def save(self, config: MonitoringConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(config.to_payload(), indent=2), encoding="utf-8")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class MonitoringDashboard:
    def __init__(
        self,
        base_url: str,
        store: ConfigStore,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        api_prefix: str = "/api",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_prefix = api_prefix
        self.sleep = sleep

    @property
    def is_configured(self) -> bool:
        return self.store.load() is not None

    def _post(self, route: str, payload: dict) -> requests.Response:
        url = f"{self.base_url}{self.api_prefix}/server-monitoring/{route}"
        try:
            return self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise DashboardError(f"Network error: {exc}") from exc

    @staticmethod
    def _error_message(response: requests.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        if isinstance(data, dict):
            return data.get("message") or data.get("error") or default
        return default

    def test_connection(self, config: MonitoringConfig) -> dict:
        response = self._post("test-connection", config.to_payload())
        if not response.ok:
            raise DashboardError(
                self._error_message(response, "Connection test failed")
            )
        return response.json()

    def save_config(self, data: Union[MonitoringConfig, dict]) -> MonitoringConfig:
        """
        Validate, test and persist a configuration. Invalid input raises
        ValidationError before any request is made; a failed connection test
        raises DashboardError and leaves the saved configuration untouched.
        """
        if isinstance(data, MonitoringConfig):
            config = data
        else:
            config = MonitoringConfig.model_validate(data)
        result = self.test_connection(config)
        self.store.save(config)
        logger.info(
            "Zabbix configuration saved (%s hosts found)", result.get("hostCount", "?")
        )
        return config

    def fetch_metrics(self) -> ServerMetrics:
        config = self.store.load_raw()
        if not (config.get("url") and config.get("username") and config.get("password")):
            raise DashboardError(
                "Zabbix configuration is incomplete. Please check settings."
            )

        response = self._post("metrics", config)
        if not response.ok:
            raise DashboardError(
                self._error_message(
                    response, f"HTTP {response.status_code}: {response.reason}"
                )
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise DashboardError("Invalid response format from server") from exc
        if not isinstance(data, dict):
            raise DashboardError("Invalid response format from server")

        try:
            return ServerMetrics(
                hosts=data.get("hosts") or [],
                problems=data.get("problems") or [],
                total_hosts=data.get("totalHosts") or 0,
                available_hosts=data.get("availableHosts") or 0,
                unavailable_hosts=data.get("unavailableHosts") or 0,
                avg_cpu_usage=data.get("avgCpuUsage") or 0,
                avg_memory_usage=data.get("avgMemoryUsage") or 0,
            )
        except ValidationError as exc:
            raise DashboardError("Invalid response format from server") from exc

    def fetch_with_retry(self) -> ServerMetrics:
        failure_count = 0
        while True:
            try:
                return self.fetch_metrics()
            except DashboardError as exc:
                if not should_retry(failure_count, exc):
                    raise
                delay = retry_delay(failure_count)
                failure_count += 1
                logger.warning(
                    "Metrics fetch failed (%s), retry %d in %.0fs",
                    exc,
                    failure_count,
                    delay,
                )
                self.sleep(delay)

    def poll(
        self,
        on_update: Callable[[ServerMetrics], None],
        stop: Optional[threading.Event] = None,
        on_error: Optional[Callable[[DashboardError], None]] = None,
    ) -> None:
        """
        Fetch once, then keep refetching every refresh interval while
        auto-refresh is enabled. Returns when auto-refresh is off or `stop`
        is set.
        """
        config = self.store.load()
        if config is None:
            raise DashboardError("Server monitoring is not configured")
        stop = stop or threading.Event()

        while True:
            try:
                on_update(self.fetch_with_retry())
            except DashboardError as exc:
                if on_error is not None:
                    on_error(exc)
                else:
                    logger.error("Failed to fetch metrics: %s", exc)

            if not config.auto_refresh:
                return
            if stop.wait(config.refresh_interval):
                return
            # Pick up a configuration saved while we were waiting.
            config = self.store.load() or config
