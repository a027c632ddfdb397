"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class CloudflareSettings(BaseModel):
    """Settings controlling access to the Cloudflare API."""

    base_url: str = Field(
        default="https://api.cloudflare.com/client/v4",
        description="Cloudflare API v4 base URL",
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Per-request timeout for API calls"
    )
    page_size: int = Field(
        default=100, ge=5, le=1000, description="Rules requested per page"
    )
    max_parallel_zones: int = Field(
        default=4, ge=1, description="Zones fetched concurrently during a sync"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./ghostmail.db"), description="SQLite database path"
    )


class SecretsSettings(BaseModel):
    """Settings for the encrypted credential vault."""

    vault_path: Path = Field(
        default=Path("./ghostmail.secrets"),
        description="Encrypted token vault location",
    )
    key_path: Path = Field(
        default=Path.home() / ".ghostmail" / "secret.key",
        description="Fernet key file, created on first use",
    )


class CacheSettings(BaseModel):
    """Settings for the statistics and icon caches."""

    statistics_path: Path = Field(
        default=Path("./cache/email_statistics_cache.json"),
        description="File holding the cached statistics envelope",
    )
    statistics_max_age_hours: float = Field(
        default=24.0, gt=0, description="Age after which statistics are stale"
    )
    icon_dir: Path = Field(
        default=Path("./cache/website-icons"), description="On-disk icon cache"
    )
    icon_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Timeout for icon downloads"
    )
    forwarding_addresses_ttl_seconds: int = Field(
        default=300, ge=0, description="TTL for verified forwarding addresses"
    )


class SyncSettings(BaseModel):
    """Settings controlling sync cadence and retries."""

    periodic_interval_seconds: float = Field(
        default=120.0, gt=0, description="Background refresh interval"
    )
    foreground_cooldown_seconds: float = Field(
        default=30.0, ge=0, description="Minimum gap between foreground refreshes"
    )
    max_attempts: int = Field(
        default=3, ge=1, description="Attempts for retryable remote reads"
    )
    base_delay_seconds: float = Field(
        default=1.0, ge=0, description="Initial backoff delay"
    )
    max_delay_seconds: float = Field(
        default=8.0, ge=0, description="Upper bound for a single backoff delay"
    )


class DeviceSettings(BaseModel):
    """Identity attached to aliases created on this device."""

    user_identifier: str = Field(
        default="", description="Owner identifier stamped on new aliases"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class WebSettings(BaseModel):
    """Settings for the JSON API server."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8765, description="Bind port")


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    cloudflare: CloudflareSettings = Field(default_factory=CloudflareSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    device: DeviceSettings = Field(default_factory=DeviceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    web: WebSettings = Field(default_factory=WebSettings)


ENV_PREFIX = "GHOSTMAIL_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        normalized_value: Any = value
        if isinstance(value, str) and value == "":
            normalized_value = None
        elif isinstance(value, str):
            lowercase_value = value.lower()
            if lowercase_value == "true":
                normalized_value = True
            elif lowercase_value == "false":
                normalized_value = False
        _merge_into_tree(collected, path, normalized_value)

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(
        env_file, include_environment=include_environment
    )
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "CacheSettings",
    "CloudflareSettings",
    "DeviceSettings",
    "LoggingSettings",
    "SecretsSettings",
    "StorageSettings",
    "SyncSettings",
    "WebSettings",
    "load_app_settings",
]
