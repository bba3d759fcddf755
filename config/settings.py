"""
Configuration loader for the Introloop backbone.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./introloop.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class EventDispatchConfig:
    enabled: bool = True
    poll_interval_s: int = 10
    batch_size: int = 20
    max_retries: int = 5
    claim_lease_s: int = 300            # a claim older than this may be taken over


@dataclass
class TaskDispatchConfig:
    enabled: bool = True
    poll_interval_s: int = 30
    batch_size: int = 10
    default_max_retries: int = 3
    initial_backoff_s: int = 60         # backoff = initial * 2^retry_count
    visibility_timeout_s: int = 600     # processing longer than this is reaped
    reaper_interval_s: int = 60


@dataclass
class MessagingConfig:
    backend: str = "event"              # "event" appends to the log, "http" posts to a gateway
    base_url: str = ""
    api_key: str = ""
    timeout_s: float = 10.0


@dataclass
class WorkflowConfig:
    offer_reminder_delay_days: int = 3
    offer_confirmation_expiry_days: int = 7
    priority_expiry_days: int = 14


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class Settings:
    app_name: str = "Introloop"
    debug: bool = False
    worker_id: str = field(default_factory=_default_worker_id)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    events: EventDispatchConfig = field(default_factory=EventDispatchConfig)
    tasks: TaskDispatchConfig = field(default_factory=TaskDispatchConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    workflows: WorkflowConfig = field(default_factory=WorkflowConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], defaults):
    """Build a config dataclass from a raw YAML mapping, ignoring unknown keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    base = {k: getattr(defaults, k) for k in cls.__dataclass_fields__}
    base.update(known)
    return cls(**base)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "INTROLOOP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.worker_id = raw.get("worker_id") or settings.worker_id

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "events" in raw:
            settings.events = _section(EventDispatchConfig, raw["events"], settings.events)
        if "tasks" in raw:
            settings.tasks = _section(TaskDispatchConfig, raw["tasks"], settings.tasks)
        if "messaging" in raw:
            settings.messaging = _section(MessagingConfig, raw["messaging"], settings.messaging)
        if "workflows" in raw:
            settings.workflows = _section(WorkflowConfig, raw["workflows"], settings.workflows)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
