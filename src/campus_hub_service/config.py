"""
Configuration management for the Campus Hub service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEYS = frozenset(
    {"jwt_secret", "consumer_key", "consumer_secret", "security_credential"}
)


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or malformed."""


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class AuthConfig(BaseModel):
    """Bearer token configuration."""

    model_config = ConfigDict(extra="forbid")
    jwt_secret: str
    token_ttl_seconds: int


class MpesaConfig(BaseModel):
    """M-Pesa gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: str
    initiator_name: str
    security_credential: str
    callback_base_url: str
    timeout_seconds: int
    token_safety_margin_seconds: int


class NotificationsConfig(BaseModel):
    """Notification listing configuration."""

    model_config = ConfigDict(extra="forbid")
    list_limit: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    auth: AuthConfig
    mpesa: MpesaConfig
    notifications: NotificationsConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings. Cached after the first call."""
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigurationError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ConfigurationError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
