"""Configuration for the check engine: YAML file first, environment variables on top."""

import json
import os
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from pulsewatch.models import (
    DEFAULT_EXPECTED_STATUS_CODES,
    DEFAULT_OFFLINE_THRESHOLD_MINUTES,
    DEFAULT_TIMEOUT_SECONDS,
    CheckType,
    Monitor,
)


DEFAULT_CONFIG_PATH = "config/pulsewatch.yaml"
DEFAULT_USER_AGENT = "Pulsewatch Uptime Monitoring Bot"


class MonitorEntry(BaseModel):
    """One monitor declared in the YAML file."""
    id: str = Field(..., min_length=1, max_length=80)
    name: Optional[str] = Field(default=None, description="Display name, defaults to the id")
    url: str = Field(..., min_length=1, max_length=2000)
    check_type: str = Field(default=CheckType.HTTP.value, description="http, tcp or status-api")
    method: str = Field(default="GET")
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, le=300)
    expected_status_codes: str = Field(default=DEFAULT_EXPECTED_STATUS_CODES)
    keyword: Optional[str] = None
    forbidden_keyword: Optional[str] = None
    offline_threshold_minutes: float = Field(default=DEFAULT_OFFLINE_THRESHOLD_MINUTES, gt=0)
    target_servers: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_content_type: str = Field(default="application/json")
    webhook_headers: Optional[dict[str, Any]] = None
    webhook_body: Optional[dict[str, Any]] = None
    webhook_username: Optional[str] = None
    is_active: bool = True

    def to_monitor(self) -> Monitor:
        return Monitor.from_row(
            {
                **self.model_dump(exclude={"webhook_headers", "webhook_body"}),
                "name": self.name or self.id,
                "webhook_headers": self._dump_json(self.webhook_headers),
                "webhook_body": self._dump_json(self.webhook_body),
            }
        )

    @staticmethod
    def _dump_json(value: Optional[dict[str, Any]]) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False)


class EngineConfig(BaseModel):
    """Main configuration for the check engine."""

    db_path: str = Field(default="data/pulsewatch.db", description="sqlite database file")
    log_level: str = Field(default="INFO", description="Logging level")

    interval_seconds: int = Field(default=60, ge=1, description="Seconds between ticks when looping")
    check_concurrency: int = Field(default=10, ge=1, description="Monitors probed in parallel per tick")
    webhook_timeout_seconds: float = Field(default=10.0, gt=0, description="Ceiling for one webhook POST")
    latest_check_ttl_seconds: int = Field(default=86400, ge=1)
    stats_max_checks: int = Field(default=10_000, ge=1, description="Most recent checks used for stats")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)

    monitors: list[MonitorEntry] = Field(default_factory=list, description="Monitors seeded into the store")


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """Load configuration from file or environment variables."""
    if config_path is None:
        config_path = os.getenv("PULSEWATCH_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    env_overrides = {
        "db_path": os.getenv("PULSEWATCH_DB_PATH"),
        "log_level": os.getenv("LOG_LEVEL"),
        "check_concurrency": os.getenv("PULSEWATCH_CHECK_CONCURRENCY"),
        "webhook_timeout_seconds": os.getenv("PULSEWATCH_WEBHOOK_TIMEOUT"),
        "interval_seconds": os.getenv("PULSEWATCH_INTERVAL_SECONDS"),
    }

    for key, value in env_overrides.items():
        if value is not None and value.strip():
            config_data[key] = value.strip()

    return EngineConfig(**config_data)
