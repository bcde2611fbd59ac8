"""
Data shapes shared by the Zabbix proxy routes and the dashboard client.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_REFRESH_INTERVAL = 30
MAX_REFRESH_INTERVAL = 600

SEVERITY_LABELS = {
    0: "Not Classified",
    1: "Information",
    2: "Warning",
    3: "Average",
    4: "High",
    5: "Disaster",
}


class MonitoringConfig(BaseModel):
    """Connection settings for a Zabbix server, as entered by the user."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    api_version: str = Field("2.4", alias="apiVersion")
    auto_refresh: bool = Field(True, alias="autoRefresh")
    refresh_interval: int = Field(
        60, ge=MIN_REFRESH_INTERVAL, le=MAX_REFRESH_INTERVAL, alias="refreshInterval"
    )

    @field_validator("url")
    @classmethod
    def _valid_url(cls, value: str) -> str:
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Please enter a valid URL")
        return value.strip()

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class ZabbixHost(BaseModel):
    hostid: str
    host: str
    name: str
    status: str
    available: str
    cpu_usage: Optional[float] = None
    memory_usage: Optional[float] = None
    uptime: Optional[int] = None
    last_seen: Optional[str] = None
    groups: list[str] = Field(default_factory=list)


class ProblemHost(BaseModel):
    host: str
    name: str


class ZabbixProblem(BaseModel):
    eventid: str
    name: str
    severity: int = Field(0, ge=0, le=5)
    acknowledged: str = "0"
    clock: str
    hosts: list[ProblemHost] = Field(default_factory=list)
    age: str = ""


class ServerMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hosts: list[ZabbixHost] = Field(default_factory=list)
    problems: list[ZabbixProblem] = Field(default_factory=list)
    total_hosts: int = Field(0, alias="totalHosts")
    available_hosts: int = Field(0, alias="availableHosts")
    unavailable_hosts: int = Field(0, alias="unavailableHosts")
    avg_cpu_usage: float = Field(0.0, alias="avgCpuUsage")
    avg_memory_usage: float = Field(0.0, alias="avgMemoryUsage")


def severity_label(severity: int) -> str:
    return SEVERITY_LABELS.get(severity, SEVERITY_LABELS[0])


def format_uptime(seconds: int | float) -> str:
    seconds = int(seconds)
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    minutes = (seconds % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
