"""
ZapFlow configuration.

Settings are plain dataclasses, one per section of settings.yaml. Any
string in the YAML may reference the environment as ${VAR}; unset
variables are left as written. The file defaults to config/settings.yaml
and can be moved with ZAPFLOW_CONFIG.

    settings = get_settings()
    settings.scheduler.routine_interval_seconds
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path(__file__).parent / "settings.yaml"
_ENV_REF = re.compile(r"\$\{(\w+)\}")


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./zapflow.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # sql | memory | file
    store_file_dir: str = "./data"


@dataclass
class GatewayConfig:
    type: str = "mock"                                 # zapi | mock
    base_url: str = "https://api.z-api.io"
    timeout_seconds: float = 30.0
    max_retries: int = 3
    rate_per_minute: int = 10                          # per messaging session
    max_per_hour: int = 100                            # per messaging session
    typing_delay_seconds: int = 1


@dataclass
class SchedulerConfig:
    enabled: bool = True
    routine_interval_seconds: float = 30.0
    campaign_interval_seconds: float = 60.0
    send_timeout_seconds: float = 45.0
    batch_send_delay_seconds: float = 2.0              # between targets of one campaign batch
    media_send_delay_seconds: float = 2.0              # between text and each attachment


@dataclass
class BusinessHoursConfig:
    enabled: bool = False
    timezone: str = "America/Sao_Paulo"
    start_hour: int = 8
    end_hour: int = 18
    weekdays_only: bool = True


@dataclass
class RoutineConfig:
    monitored_columns: list[str] = field(default_factory=lambda: ["hot_lead", "inbox"])
    greetings: list[str] = field(default_factory=list)
    fallback_greetings: list[str] = field(default_factory=list)
    business_hours: BusinessHoursConfig = field(default_factory=BusinessHoursConfig)


@dataclass
class Settings:
    app_name: str = "ZapFlow"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    routines: RoutineConfig = field(default_factory=RoutineConfig)


_settings: Optional[Settings] = None


def _expand_env(node: Any) -> Any:
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    return node


def _coerce(default: Any, value: Any) -> Any:
    # YAML gives "5" and 5 for the same knob; follow the default's type
    if value is None:
        return default
    if isinstance(default, bool):
        return value if isinstance(value, bool) else str(value).lower() in ("1", "true", "yes", "on")
    if isinstance(default, float):
        return float(value)
    if isinstance(default, int):
        return int(value)
    return value


def _build(section_cls, raw: Optional[dict], path: str = ""):
    """Instantiate a settings dataclass, overlaying whatever keys `raw` provides."""
    instance = section_cls()
    raw = raw or {}
    known = {f.name for f in fields(section_cls)}
    for key in raw.keys() - known:
        logger.warning("settings_unknown_key", key=f"{path}{key}")

    for f in fields(section_cls):
        if f.name not in raw:
            continue
        current = getattr(instance, f.name)
        if is_dataclass(current):
            value = _build(type(current), raw[f.name], f"{path}{f.name}.")
        else:
            value = _coerce(current, raw[f.name])
        setattr(instance, f.name, value)
    return instance


def load_settings(config_path: str = None) -> Settings:
    """Read settings from YAML (defaults when the file is absent) and cache them."""
    global _settings

    path = Path(config_path or os.environ.get("ZAPFLOW_CONFIG", DEFAULT_CONFIG_PATH))
    raw: dict = {}
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})
    else:
        logger.info("settings_file_missing", path=str(path))

    _settings = _build(Settings, raw)
    return _settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
