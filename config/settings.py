"""
Configuration loader for the FollowUp engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followup_engine.db"      # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    redis_url: str = "redis://localhost:6379"
    prefix: str = "collectflo"            # key namespace in Redis
    broker_required: bool = False         # refuse to start in fallback mode
    probe_timeout: float = 2.0            # seconds for the startup broker probe
    max_retries: int = 3                  # default max_attempts for every queue
    retry_delay: float = 60.0             # base backoff seconds
    job_timeout: float = 300.0            # per-job handler timeout, seconds
    default_concurrency: int = 5
    poll_interval: float = 1.0            # delayed-job promotion interval (Redis)
    concurrency: dict[str, int] = field(default_factory=dict)   # per-queue override


@dataclass
class SchedulerConfig:
    timezone: str = "UTC"
    followup_processing: str = "*/15 9-18 * * 1-5"
    urgent_processing: str = "0 * * * *"
    daily_maintenance: str = "0 2 * * *"
    weekly_report: str = "0 8 * * 1"
    health_check: str = "*/5 * * * *"
    invoice_sync: str = "0 1 * * *"


@dataclass
class MaintenanceConfig:
    archive_failed_after_days: int = 30
    delete_sent_after_days: int = 90
    queue_clean_after_hours: int = 24


@dataclass
class ProcessorConfig:
    batch_limit: int = 100
    urgent_batch_limit: int = 20
    dispatch_timeout: float = 30.0        # seconds for each lookup / send
    concurrency: int = 1                  # 1 = sequential batches
    grace_days: int = 1


@dataclass
class BillingConfig:
    type: str = "memory"                  # "rest" | "memory"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0
    payment_link_base: str = ""


@dataclass
class ChannelConfig:
    enabled: bool = True
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "FollowUpEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    processor: ProcessorConfig = field(default_factory=ProcessorConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)
    companies: list[str] = field(default_factory=list)
    rules: list[dict[str, Any]] = field(default_factory=list)   # default rule set override


_settings: Optional[Settings] = None


_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _expand_env(obj: Any) -> Any:
    """Replace ``${VAR}`` / ``${VAR:-fallback}`` in every string; unset with no fallback → ""."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), obj)
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    return obj


def _coerce(value: Any, default: Any) -> Any:
    """Env-substituted scalars arrive as strings; convert to the field's type."""
    if not isinstance(value, str) or isinstance(default, str):
        return value
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _section(cls, raw: dict[str, Any] | None):
    """Build a config dataclass from a raw mapping, ignoring unknown keys."""
    instance = cls()
    for f in fields(cls):
        if raw and f.name in raw:
            setattr(instance, f.name, _coerce(raw[f.name], getattr(instance, f.name)))
    return instance


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWUP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _expand_env(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _coerce(raw.get("debug", settings.debug), False)

        settings.database = _section(DatabaseConfig, raw.get("database"))
        settings.queue = _section(QueueConfig, raw.get("queue"))
        settings.queue.concurrency = {
            name: int(value) for name, value in (settings.queue.concurrency or {}).items()
        }
        settings.scheduler = _section(SchedulerConfig, raw.get("scheduler"))
        settings.maintenance = _section(MaintenanceConfig, raw.get("maintenance"))
        settings.processor = _section(ProcessorConfig, raw.get("processor"))
        settings.billing = _section(BillingConfig, raw.get("billing"))
        settings.logging = _section(LoggingConfig, raw.get("logging"))

        for ch_name, ch_data in (raw.get("channels") or {}).items():
            ch_data = ch_data or {}
            settings.channels[ch_name] = ChannelConfig(
                enabled=_coerce(ch_data.get("enabled", True), True),
                credentials=ch_data.get("credentials", {}) or {},
            )

        settings.companies = [str(c) for c in raw.get("companies", []) or []]
        settings.rules = raw.get("rules", []) or []

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
