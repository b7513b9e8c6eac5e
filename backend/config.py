# backend/config.py

import os
import re
import logging
from datetime import timedelta
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

# Process-level settings
CONFIG_PATH = os.getenv("AUTOSCALER_CONFIG", "config/application.yaml")

# Dry-run mode (set DRY_RUN=true to log scaling decisions without touching Spanner)
DRY_RUN = os.getenv("DRY_RUN", "False").lower() == "true"

LOG_FILE = os.getenv("AUTOSCALER_LOG_FILE", "logs/autoscaler.log")
LOG_LEVEL = os.getenv("AUTOSCALER_LOG_LEVEL", "INFO").upper()

# Scaling defaults
DEFAULT_THREAD_POOL_SIZE = 10
DEFAULT_CHECK_INTERVAL = timedelta(minutes=5)
DEFAULT_SCALE_UP_REBALANCE = timedelta(minutes=5)
DEFAULT_SCALE_DOWN_REBALANCE = timedelta(minutes=30)
DEFAULT_REQUEST_TIMEOUT = timedelta(seconds=60)
DEFAULT_OPERATION_TIMEOUT = timedelta(minutes=15)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d)\s*$")
_DURATION_UNITS = {
    "ms": "milliseconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


class ConfigError(Exception):
    """Invalid or unreadable configuration. Fatal at startup."""


def configure_logging() -> None:
    os.makedirs(os.path.dirname(LOG_FILE) or ".", exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.FileHandler(LOG_FILE), logging.StreamHandler()],
    )


def parse_duration(value):
    """Accept "30s" / "5m" / "1h" style strings on top of what pydantic understands."""
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    return value


class InstanceInformation(BaseModel):
    """Bounds and utilisation bands for a single Spanner instance."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    project_id: str = Field(min_length=1)
    instance_id: str = Field(min_length=1)
    min_nodes: int = Field(default=1, ge=1)
    max_nodes: int = Field(ge=1)
    max_storage_utilisation: float = Field(default=0.85, ge=0, le=1)
    target_cpu_utilisation: float = Field(default=0.65, ge=0, le=1)
    max_cpu_utilisation: float = Field(ge=0, le=1)
    min_cpu_utilisation: float = Field(ge=0, le=1)

    @model_validator(mode="before")
    @classmethod
    def default_cpu_band(cls, data):
        # The band defaults to target +/- 10 points
        if isinstance(data, dict):
            data = dict(data)
            target = data.get("target_cpu_utilisation", 0.65)
            if isinstance(target, (int, float)):
                data.setdefault("max_cpu_utilisation", min(1.0, round(target + 0.1, 6)))
                data.setdefault("min_cpu_utilisation", max(0.0, round(target - 0.1, 6)))
        return data

    @model_validator(mode="after")
    def check_bounds(self):
        if self.max_nodes < self.min_nodes:
            raise ValueError(
                f"max_nodes ({self.max_nodes}) must be >= min_nodes ({self.min_nodes})"
            )
        if not self.min_cpu_utilisation <= self.target_cpu_utilisation <= self.max_cpu_utilisation:
            raise ValueError(
                "CPU utilisation band must satisfy min <= target <= max, got "
                f"{self.min_cpu_utilisation} / {self.target_cpu_utilisation} / {self.max_cpu_utilisation}"
            )
        return self

    @property
    def name(self) -> str:
        return f"{self.project_id}/{self.instance_id}"


class CronSchedule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    cron_expression: str = Field(min_length=1)
    nodes: int = Field(ge=1)

    @field_validator("cron_expression")
    @classmethod
    def check_cron_expression(cls, value: str) -> str:
        # croniter would read a sixth field as trailing seconds, while
        # seconds-first expressions put them at the front. Accept neither.
        if len(value.split()) != 5:
            raise ValueError(
                f"Cron expression must have 5 fields (minute hour day month weekday): {value!r}"
            )
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value


class BalancedScalerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    instance: InstanceInformation


class CronScalerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    instance: InstanceInformation
    schedules: list[CronSchedule] = Field(min_length=1)


class AppConfiguration(BaseModel):
    """Effective autoscaler configuration, loaded once at startup."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Project queried for Cloud Monitoring metrics (required for balanced scalers)
    monitoring_project_id: str | None = None
    # Worker threads shared by the check loop and every cron trigger
    scaler_thread_pool_size: int = Field(default=DEFAULT_THREAD_POOL_SIZE, ge=1)
    check_interval: timedelta = DEFAULT_CHECK_INTERVAL
    # Defaults to check_interval
    metric_aggregation_duration: timedelta
    scale_up_rebalance_duration: timedelta = DEFAULT_SCALE_UP_REBALANCE
    scale_down_rebalance_duration: timedelta = DEFAULT_SCALE_DOWN_REBALANCE
    request_timeout: timedelta = DEFAULT_REQUEST_TIMEOUT
    operation_timeout: timedelta = DEFAULT_OPERATION_TIMEOUT
    cron_time_zone: str = "UTC"
    history_backend: Literal["sqlite", "memory"] = "sqlite"
    history_database: str = "data/autoscaler.db"
    balanced_scalers: list[BalancedScalerConfig] = Field(default_factory=list)
    cron_scalers: list[CronScalerConfig] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def default_aggregation(cls, data):
        if isinstance(data, dict) and data.get("metric_aggregation_duration") is None:
            data = dict(data)
            data["metric_aggregation_duration"] = data.get("check_interval", DEFAULT_CHECK_INTERVAL)
        return data

    @field_validator(
        "check_interval",
        "metric_aggregation_duration",
        "scale_up_rebalance_duration",
        "scale_down_rebalance_duration",
        "request_timeout",
        "operation_timeout",
        mode="before",
    )
    @classmethod
    def parse_durations(cls, value):
        return parse_duration(value)

    @field_validator("check_interval", "metric_aggregation_duration", "request_timeout", "operation_timeout")
    @classmethod
    def check_positive(cls, value: timedelta) -> timedelta:
        if value.total_seconds() <= 0:
            raise ValueError("duration must be positive")
        return value

    @field_validator("metric_aggregation_duration")
    @classmethod
    def check_whole_seconds(cls, value: timedelta) -> timedelta:
        # Cloud Monitoring aligns on whole seconds
        if value < timedelta(seconds=1):
            raise ValueError("metric_aggregation_duration must be at least 1s")
        return value

    @field_validator("scale_up_rebalance_duration", "scale_down_rebalance_duration")
    @classmethod
    def check_not_negative(cls, value: timedelta) -> timedelta:
        if value.total_seconds() < 0:
            raise ValueError("duration must not be negative")
        return value

    @field_validator("cron_time_zone")
    @classmethod
    def check_time_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {value!r}") from e
        return value

    @model_validator(mode="after")
    def check_monitoring_project(self):
        if self.balanced_scalers and not (self.monitoring_project_id or "").strip():
            raise ValueError("monitoring_project_id is required when balanced_scalers are configured")
        return self

    @property
    def time_zone(self) -> ZoneInfo:
        return ZoneInfo(self.cron_time_zone)


def load_configuration(path: str | os.PathLike = CONFIG_PATH) -> AppConfiguration:
    """
    Load and validate the scaling configuration from a YAML file.

    Raises:
        ConfigError: if the file is missing, unreadable or fails validation
    """
    config_path = Path(path)
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration from {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {config_path} must be a mapping")

    try:
        return AppConfiguration(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{e}") from e
