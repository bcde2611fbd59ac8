"""
IT asset-management backend.

This package provides a FastAPI application over a swappable storage layer
(in-memory by default, SQLAlchemy/Postgres when a database is reachable),
the startup bootstrap that picks between them, an external event log, and
the Zabbix-backed server monitoring proxy.
"""
