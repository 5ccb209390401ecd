"""
Configuration loader for the flow bot.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flowbot.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""                               # signs webhook bodies; empty disables the check
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    own_number: str = ""                               # the bot's own number, for self-notifications
    known_numbers: list[str] = field(default_factory=list)  # numbers saved in the business address book
    timeout_seconds: float = 15.0


@dataclass
class EngineConfig:
    typing_delay_min_seconds: float = 3.0
    typing_delay_max_seconds: float = 6.0
    fallback_threshold: int = 3
    upcoming_days: int = 6
    handoff_label: str = "Derivado"
    advisor_message: str = "Un asesor te atenderá en breve. Gracias por tu paciencia. 👤"
    call_rejected_message: str = (
        "📵 En este momento no podemos atender llamadas. Escribinos por aquí y te respondemos."
    )
    closed_notice_cooldown_hours: float = 12.0
    dedup_ttl_seconds: float = 600.0


@dataclass
class Settings:
    app_name: str = "FlowBot"
    debug: bool = False
    timezone: str = "America/Argentina/Buenos_Aires"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (unset → "")."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
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


def _section(cls, raw: dict[str, Any], default):
    """Build a dataclass section, keeping defaults for missing keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    return cls(**{**default.__dict__, **known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)

        if "whatsapp" in raw:
            settings.whatsapp = _section(WhatsAppConfig, raw["whatsapp"], settings.whatsapp)

        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"], settings.engine)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
