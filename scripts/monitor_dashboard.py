"""
Terminal version of the server monitoring dashboard.

  configure  validate, test and save Zabbix connection settings
  show       fetch one metrics snapshot
  watch      keep refreshing at the configured interval
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pydantic import ValidationError

from itam.config import get_settings
from itam.monitoring.dashboard import ConfigStore, DashboardError, MonitoringDashboard
from itam.monitoring.models import ServerMetrics, format_uptime, severity_label

logger = logging.getLogger(__name__)


def _percent(value) -> str:
    return "-" if value is None else f"{value:.1f}%"


def render(metrics: ServerMetrics) -> str:
    lines = [
        f"Hosts: {metrics.total_hosts} total, {metrics.available_hosts} available, "
        f"{metrics.unavailable_hosts} unavailable",
        f"Average CPU: {metrics.avg_cpu_usage:.1f}%  "
        f"Average memory: {metrics.avg_memory_usage:.1f}%",
        "",
    ]
    for host in metrics.hosts:
        state = {"1": "UP", "2": "DOWN"}.get(host.available, "UNKNOWN")
        uptime = format_uptime(host.uptime) if host.uptime is not None else "-"
        lines.append(
            f"  {host.name:<30} {state:<8} cpu {_percent(host.cpu_usage):>7} "
            f"mem {_percent(host.memory_usage):>7} up {uptime}"
        )
    if metrics.problems:
        lines.append("")
        lines.append("Problems:")
        for problem in metrics.problems:
            hosts = ", ".join(h.name or h.host for h in problem.hosts) or "-"
            lines.append(
                f"  [{severity_label(problem.severity):<14}] {problem.name} "
                f"({hosts}, {problem.age})"
            )
    return "\n".join(lines)


def main() -> int:
    parser = argparse.ArgumentParser(description="Server monitoring dashboard")
    parser.add_argument(
        "--server",
        type=str,
        default="http://127.0.0.1:5000",
        help="Base URL of the asset-management API",
    )
    parser.add_argument(
        "--config-path",
        type=str,
        default=None,
        help="Where to keep the saved Zabbix configuration",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    configure = sub.add_parser("configure", help="Save Zabbix connection settings")
    configure.add_argument("--url", required=True)
    configure.add_argument("--username", required=True)
    configure.add_argument("--password", required=True)
    configure.add_argument("--api-version", default="2.4")
    configure.add_argument("--no-auto-refresh", action="store_true")
    configure.add_argument("--refresh-interval", type=int, default=60)

    sub.add_parser("show", help="Fetch one metrics snapshot")
    sub.add_parser("watch", help="Refresh metrics at the configured interval")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    config_path = args.config_path or get_settings().monitoring_config_path
    dashboard = MonitoringDashboard(args.server, ConfigStore(config_path))

    if args.command == "configure":
        try:
            dashboard.save_config(
                {
                    "url": args.url,
                    "username": args.username,
                    "password": args.password,
                    "apiVersion": args.api_version,
                    "autoRefresh": not args.no_auto_refresh,
                    "refreshInterval": args.refresh_interval,
                }
            )
        except ValidationError as exc:
            print(f"Invalid configuration:\n{exc}", file=sys.stderr)
            return 2
        except DashboardError as exc:
            print(f"Configuration failed: {exc}", file=sys.stderr)
            return 1
        print("Configuration saved and connection verified")
        return 0

    if not dashboard.is_configured:
        print("Server monitoring is not configured; run 'configure' first", file=sys.stderr)
        return 1

    if args.command == "show":
        try:
            print(render(dashboard.fetch_with_retry()))
        except DashboardError as exc:
            print(f"Failed to fetch metrics: {exc}", file=sys.stderr)
            return 1
        return 0

    stop = threading.Event()
    try:
        dashboard.poll(
            lambda metrics: print(render(metrics) + "\n"),
            stop=stop,
            on_error=lambda exc: print(f"Failed to fetch metrics: {exc}", file=sys.stderr),
        )
    except KeyboardInterrupt:
        stop.set()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
