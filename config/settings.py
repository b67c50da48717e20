"""
Configuration loader for the SQS receiver.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(ValueError):
    """Raised when the receiver configuration is unusable."""


@dataclass
class ReceiverConfig:
    queue_url: str = ""
    max_concurrency: int = 10           # ceiling on handler invocations in flight
    wait_seconds: int = 20              # long-poll duration per ReceiveMessage call
    include_attributes: bool = False    # request system + message attributes
    auto_delete: bool = True            # delete when the handler acknowledges
    backend: str = "sqs"                # "sqs" | "memory"
    sqs: dict[str, Any] = field(default_factory=dict)   # boto3 client kwargs
    visibility_timeout: int = 30        # memory backend only

    def validate(self) -> ReceiverConfig:
        if not self.queue_url:
            raise ConfigError("queue_url is required")
        if self.max_concurrency <= 0:
            raise ConfigError(f"max_concurrency must be > 0, got {self.max_concurrency}")
        if not 0 <= self.wait_seconds <= 20:
            raise ConfigError(f"wait_seconds must be within 0..20, got {self.wait_seconds}")
        if self.backend not in ("sqs", "memory"):
            raise ConfigError(f"unknown queue backend: {self.backend!r}")
        return self


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"             # "console" | "json"


@dataclass
class Settings:
    app_name: str = "sqs-receiver"
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def _as_bool(section: dict, key: str, default: bool) -> bool:
    """Read a flag that may have arrived as a string from ${VAR} substitution."""
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
        return value.strip().lower() in _TRUE
    raise ConfigError(f"{key} must be a boolean, got {value!r}")


def _as_int(section: dict, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RECEIVER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)

        if "receiver" in raw:
            rc = raw["receiver"] or {}
            defaults = ReceiverConfig()
            settings.receiver = ReceiverConfig(
                queue_url=rc.get("queue_url", defaults.queue_url),
                max_concurrency=_as_int(rc, "max_concurrency", defaults.max_concurrency),
                wait_seconds=_as_int(rc, "wait_seconds", defaults.wait_seconds),
                include_attributes=_as_bool(rc, "include_attributes", defaults.include_attributes),
                auto_delete=_as_bool(rc, "auto_delete", defaults.auto_delete),
                backend=rc.get("backend", defaults.backend),
                sqs=rc.get("sqs") or {},
                visibility_timeout=_as_int(rc, "visibility_timeout", defaults.visibility_timeout),
            )

        if "logging" in raw:
            lg = raw["logging"] or {}
            settings.logging = LoggingConfig(
                level=lg.get("level", "INFO"),
                format=lg.get("format", "console"),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
