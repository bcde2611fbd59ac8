"""
Minimal Zabbix JSON-RPC client used by the server-monitoring proxy routes.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import requests

from itam.monitoring.models import MonitoringConfig, format_uptime

logger = logging.getLogger(__name__)

CPU_ITEM_KEYS = ("system.cpu.util", "system.cpu.util[,idle]")
MEMORY_ITEM_KEYS = ("vm.memory.utilization", "vm.memory.size[pused]")
UPTIME_ITEM_KEYS = ("system.uptime",)

# Error text Zabbix returns when a session is not (or no longer) valid.
_AUTH_ERROR_HINTS = ("not authorised", "not authorized", "re-login", "session terminated")


class ZabbixError(Exception):
    pass


class ZabbixAuthenticationError(ZabbixError):
    pass


def api_endpoint(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith("api_jsonrpc.php"):
        return url
    return f"{url}/api_jsonrpc.php"


def parse_version(value: str) -> tuple[int, int]:
    parts = []
    for piece in (value or "").split(".")[:2]:
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    while len(parts) < 2:
        parts.append(0)
    return parts[0], parts[1]


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _severity(value: Any) -> int:
    try:
        return min(max(int(value), 0), 5)
    except (TypeError, ValueError):
        return 0


def _average(values: list[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


class ZabbixClient:
    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        api_version: str = "2.4",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = api_endpoint(url)
        self.username = username
        self.password = password
        self.api_version = parse_version(api_version)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.auth_token: Optional[str] = None
        self._request_id = 0

    @classmethod
    def from_config(
        cls,
        config: MonitoringConfig,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> "ZabbixClient":
        return cls(
            config.url,
            config.username,
            config.password,
            api_version=config.api_version,
            timeout=timeout,
            session=session,
        )

    def call(self, method: str, params: Any, auth: bool = True) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }
        headers = {"Content-Type": "application/json-rpc"}
        if auth and self.auth_token:
            # The "auth" body field was replaced by a bearer header in 6.4.
            if self.api_version >= (6, 4):
                headers["Authorization"] = f"Bearer {self.auth_token}"
            else:
                payload["auth"] = self.auth_token

        try:
            response = self.session.post(
                self.endpoint, json=payload, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ZabbixError(f"Could not reach Zabbix server: {exc}") from exc

        if response.status_code == 401:
            raise ZabbixAuthenticationError("Authentication failed (HTTP 401)")
        if not response.ok:
            raise ZabbixError(f"Zabbix server returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise ZabbixError("Invalid response format from Zabbix server") from exc

        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            if not isinstance(error, dict):
                error = {"message": error}
            message = " ".join(
                str(part) for part in (error.get("message"), error.get("data")) if part
            ) or "Unknown Zabbix error"
            if method == "user.login" or any(
                hint in message.lower() for hint in _AUTH_ERROR_HINTS
            ):
                raise ZabbixAuthenticationError(f"Authentication failed: {message}")
            raise ZabbixError(message)
        if not isinstance(body, dict) or "result" not in body:
            raise ZabbixError("Invalid response format from Zabbix server")
        return body["result"]

    def version(self) -> str:
        return self.call("apiinfo.version", {}, auth=False)

    def login(self) -> str:
        user_key = "username" if self.api_version >= (5, 4) else "user"
        token = self.call(
            "user.login", {user_key: self.username, "password": self.password}, auth=False
        )
        if not token:
            raise ZabbixAuthenticationError("Authentication failed: empty session token")
        self.auth_token = token
        return token

    def get_hosts(self) -> list[dict]:
        groups_key = "selectHostGroups" if self.api_version >= (6, 2) else "selectGroups"
        return self.call(
            "host.get",
            {
                "output": ["hostid", "host", "name", "status", "available"],
                groups_key: ["name"],
                "selectInterfaces": ["available"],
            },
        )

    def get_items(self, host_ids: list[str]) -> list[dict]:
        if not host_ids:
            return []
        return self.call(
            "item.get",
            {
                "output": ["hostid", "key_", "lastvalue", "lastclock"],
                "hostids": host_ids,
                "filter": {
                    "key_": list(CPU_ITEM_KEYS + MEMORY_ITEM_KEYS + UPTIME_ITEM_KEYS)
                },
            },
        )

    def get_problems(self) -> list[dict]:
        problems = self.call(
            "problem.get",
            {
                "output": [
                    "eventid",
                    "objectid",
                    "name",
                    "severity",
                    "acknowledged",
                    "clock",
                ],
                "recent": True,
                "sortfield": ["eventid"],
                "sortorder": "DESC",
            },
        )
        trigger_ids = sorted({p["objectid"] for p in problems if p.get("objectid")})
        hosts_by_trigger: dict[str, list[dict]] = {}
        if trigger_ids:
            triggers = self.call(
                "trigger.get",
                {
                    "triggerids": trigger_ids,
                    "output": ["triggerid"],
                    "selectHosts": ["host", "name"],
                },
            )
            for trigger in triggers:
                hosts_by_trigger[trigger.get("triggerid")] = [
                    {"host": h.get("host", ""), "name": h.get("name", "")}
                    for h in trigger.get("hosts", [])
                ]
        for problem in problems:
            problem["hosts"] = hosts_by_trigger.get(problem.get("objectid"), [])
        return problems

    def metrics(self, now: Optional[float] = None) -> dict:
        """Build the dashboard snapshot from hosts, item values and problems."""
        now = time.time() if now is None else now
        raw_hosts = self.get_hosts()
        raw_hosts = [h for h in raw_hosts if h.get("hostid")]
        items = self.get_items([h["hostid"] for h in raw_hosts])

        values: dict[str, dict[str, Any]] = {}
        for item in items:
            host_values = values.setdefault(item.get("hostid"), {})
            key = item.get("key_")
            value = _to_float(item.get("lastvalue"))
            if value is None:
                continue
            if key == "system.cpu.util[,idle]":
                host_values.setdefault("cpu_usage", round(100.0 - value, 2))
            elif key in CPU_ITEM_KEYS:
                host_values["cpu_usage"] = round(value, 2)
            elif key in MEMORY_ITEM_KEYS:
                host_values["memory_usage"] = round(value, 2)
            elif key in UPTIME_ITEM_KEYS:
                host_values["uptime"] = int(value)
            lastclock = _to_float(item.get("lastclock"))
            if lastclock:
                seen = max(host_values.get("_lastclock", 0), lastclock)
                host_values["_lastclock"] = seen

        hosts = []
        for raw in raw_hosts:
            host_values = values.get(raw["hostid"], {})
            groups = raw.get("hostgroups") or raw.get("groups") or []
            lastclock = host_values.get("_lastclock")
            hosts.append(
                {
                    "hostid": raw["hostid"],
                    "host": raw.get("host", ""),
                    "name": raw.get("name") or raw.get("host", ""),
                    "status": raw.get("status", "0"),
                    "available": self._availability(raw),
                    "cpu_usage": host_values.get("cpu_usage"),
                    "memory_usage": host_values.get("memory_usage"),
                    "uptime": host_values.get("uptime"),
                    "last_seen": (
                        time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(lastclock))
                        if lastclock
                        else None
                    ),
                    "groups": [g.get("name", "") for g in groups],
                }
            )

        problems = []
        for raw in self.get_problems():
            clock = _to_float(raw.get("clock")) or now
            problems.append(
                {
                    "eventid": str(raw.get("eventid", "")),
                    "name": raw.get("name", ""),
                    "severity": _severity(raw.get("severity")),
                    "acknowledged": str(raw.get("acknowledged", "0")),
                    "clock": str(raw.get("clock", "")),
                    "hosts": raw.get("hosts", []),
                    "age": format_uptime(max(now - clock, 0)),
                }
            )

        return {
            "hosts": hosts,
            "problems": problems,
            "totalHosts": len(hosts),
            "availableHosts": sum(1 for h in hosts if h["available"] == "1"),
            "unavailableHosts": sum(1 for h in hosts if h["available"] == "2"),
            "avgCpuUsage": _average(
                [h["cpu_usage"] for h in hosts if h["cpu_usage"] is not None]
            ),
            "avgMemoryUsage": _average(
                [h["memory_usage"] for h in hosts if h["memory_usage"] is not None]
            ),
        }

    @staticmethod
    def _availability(raw_host: dict) -> str:
        # Zabbix 5.4 moved availability from the host onto its interfaces.
        if raw_host.get("available") not in (None, ""):
            return str(raw_host["available"])
        states = {str(i.get("available")) for i in raw_host.get("interfaces", [])}
        if "1" in states:
            return "1"
        if "2" in states:
            return "2"
        return "0"
