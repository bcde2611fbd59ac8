"""
Configuration and settings for the asset-management service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_prefix="ITAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")
    environment: str = Field(default="development")

    # Listener
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000)

    # Database (Postgres expected). Presence alone does not select the
    # durable backend; the bootstrap also needs a live connection.
    database_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "database_url"),
    )

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Bootstrap timing
    readiness_timeout_seconds: float = Field(default=10.0, ge=0)
    readiness_initial_backoff_seconds: float = Field(default=0.25, gt=0)
    readiness_max_backoff_seconds: float = Field(default=2.0, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    migration_timeout_seconds: float = Field(default=120.0, gt=0)
    admin_check_delay_seconds: float = Field(default=0.5, ge=0)

    # Default admin account. No password default: when unset, one is
    # generated at bootstrap and reported once on the server log.
    admin_username: str = Field(default="admin")
    admin_password: Optional[str] = Field(default=None)
    admin_email: str = Field(default="admin@example.com")
    admin_first_name: str = Field(default="Admin")
    admin_last_name: str = Field(default="User")

    # External event log
    log_dir: str = Field(default="logs")
    log_max_bytes: int = Field(default=10 * 1024 * 1024)
    log_backup_count: int = Field(default=5)
    heartbeat_interval_seconds: float = Field(default=300.0, gt=0)
    api_log_line_limit: int = Field(default=80, ge=2)
    api_log_body_limit: int = Field(default=2000, ge=0)

    # Zabbix proxy
    zabbix_timeout_seconds: float = Field(default=15.0, gt=0)

    # Dashboard client
    monitoring_config_path: str = Field(
        default="~/.itam/zabbix-server-config.json"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
