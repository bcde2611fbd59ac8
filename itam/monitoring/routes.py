"""
Proxy routes between the monitoring dashboard and a Zabbix server.

Both routes take the dashboard's configuration as the request body; nothing
is stored server-side. Errors come back as `{"message": ...}`.
"""

import logging
from typing import Callable

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from itam.dependencies import get_zabbix_client_factory
from itam.monitoring.models import MonitoringConfig
from itam.monitoring.zabbix import ZabbixAuthenticationError, ZabbixClient, ZabbixError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/server-monitoring")


def _message(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message})


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    text = first.get("msg", "Invalid configuration")
    return f"{location}: {text}" if location else text


def _zabbix_failure(exc: ZabbixError) -> JSONResponse:
    if isinstance(exc, ZabbixAuthenticationError):
        return _message(401, str(exc))
    return _message(502, str(exc))


@router.post("/test-connection")
def test_connection(
    payload: dict = Body(...),
    client_factory: Callable[[MonitoringConfig], ZabbixClient] = Depends(
        get_zabbix_client_factory
    ),
):
    try:
        config = MonitoringConfig.model_validate(payload)
    except ValidationError as exc:
        return _message(400, _validation_message(exc))

    client = client_factory(config)
    try:
        version = client.version()
        client.login()
        host_count = len(client.get_hosts())
    except ZabbixError as exc:
        logger.warning("Zabbix connection test to %s failed: %s", config.url, exc)
        return _zabbix_failure(exc)

    return {
        "success": True,
        "message": "Connected to Zabbix server successfully",
        "version": version,
        "hostCount": host_count,
    }


@router.post("/metrics")
def metrics(
    payload: dict = Body(...),
    client_factory: Callable[[MonitoringConfig], ZabbixClient] = Depends(
        get_zabbix_client_factory
    ),
):
    try:
        config = MonitoringConfig.model_validate(payload)
    except ValidationError as exc:
        return _message(400, _validation_message(exc))

    client = client_factory(config)
    try:
        client.login()
        return client.metrics()
    except ZabbixError as exc:
        logger.warning("Fetching Zabbix metrics from %s failed: %s", config.url, exc)
        return _zabbix_failure(exc)
