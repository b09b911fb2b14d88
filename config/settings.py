"""
Configuration loader for the ScriptBot engine.
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
class TickConfig:
    tick_delay_ms: int = 1500            # scheduler interval
    require_delivery: bool = False       # gate on "delivered" instead of "sent"
    default_timeout_ms: int = 15 * 60 * 1000


@dataclass
class StorageConfig:
    backend: str = "memory"              # "memory" | "file" | "none"
    file_dir: str = "./data"


@dataclass
class StudioConfig:
    command_uri: str = ""                # remote script service base url
    token: str = ""
    helper_api_uri: str = ""             # subscription scheduler host
    timeout_seconds: float = 30.0


@dataclass
class HttpConfig:
    timeout_seconds: float = 30.0
    retry_attempts: int = 3


@dataclass
class Settings:
    app_name: str = "ScriptBot"
    debug: bool = False
    log_level: str = "info"
    matcher: str = "regex"
    hostname: str = "0.0.0.0"
    tick: TickConfig = field(default_factory=TickConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    studio: StudioConfig = field(default_factory=StudioConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        """Build settings from an already-parsed mapping."""
        settings = cls()
        raw = _process_values(raw or {})

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", "debug" if settings.debug else settings.log_level)
        settings.matcher = raw.get("matcher", settings.matcher)
        settings.hostname = raw.get("hostname", settings.hostname)

        if "tick" in raw:
            t = raw["tick"]
            settings.tick = TickConfig(
                tick_delay_ms=int(t.get("tick_delay_ms", 1500)),
                require_delivery=bool(t.get("require_delivery", False)),
                default_timeout_ms=int(t.get("default_timeout_ms", 15 * 60 * 1000)),
            )

        if "storage" in raw:
            s = raw["storage"]
            settings.storage = StorageConfig(
                backend=s.get("backend", "memory"),
                file_dir=s.get("file_dir", "./data"),
            )

        if "studio" in raw:
            st = raw["studio"]
            settings.studio = StudioConfig(
                command_uri=st.get("command_uri", ""),
                token=st.get("token", ""),
                helper_api_uri=st.get("helper_api_uri", ""),
                timeout_seconds=float(st.get("timeout_seconds", 30.0)),
            )

        if "http" in raw:
            h = raw["http"]
            settings.http = HttpConfig(
                timeout_seconds=float(h.get("timeout_seconds", 30.0)),
                retry_attempts=int(h.get("retry_attempts", 3)),
            )

        return settings


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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SCRIPTBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = Settings.from_dict(raw)
    return _settings


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
