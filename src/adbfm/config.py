"""Configuration loading helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .listing import ListingFormat
from .poller import BACKOFF_FACTOR, FAST_DELAY_MS, MAX_DELAY_MS

ANDROID_HOME_ENV_VARS = ("ANDROID_HOME", "ANDROID_SDK_ROOT")


@dataclass(slots=True, frozen=True)
class PollingSettings:
    max_delay_ms: float = MAX_DELAY_MS
    fast_delay_ms: float = FAST_DELAY_MS
    backoff: float = BACKOFF_FACTOR


@dataclass(slots=True, frozen=True)
class Settings:
    adb_path: str = "adb"
    android_home: str | None = None
    command_timeout: float | None = None
    auto_select: bool = True
    listing_format: ListingFormat = ListingFormat.LONG
    polling: PollingSettings = PollingSettings()


def load_settings(path: Path) -> Settings:
    """Load configuration from a YAML document."""

    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    settings_raw = raw.get("settings") or {}
    polling_raw = settings_raw.get("polling") or {}

    polling = PollingSettings(
        max_delay_ms=_optional_float(polling_raw, "max_delay_ms", MAX_DELAY_MS),
        fast_delay_ms=_optional_float(polling_raw, "fast_delay_ms", FAST_DELAY_MS),
        backoff=_optional_float(polling_raw, "backoff", BACKOFF_FACTOR),
    )
    if polling.max_delay_ms <= 0 or polling.fast_delay_ms <= 0:
        raise ValueError("settings.polling delays must be > 0")
    if polling.fast_delay_ms > polling.max_delay_ms:
        raise ValueError("settings.polling.fast_delay_ms must not exceed max_delay_ms")
    if polling.backoff <= 1:
        raise ValueError("settings.polling.backoff must be > 1")

    timeout_raw = settings_raw.get("command_timeout_seconds")
    command_timeout = None
    if timeout_raw is not None:
        command_timeout = _optional_float(settings_raw, "command_timeout_seconds", 0.0)
        if command_timeout <= 0:
            raise ValueError("settings.command_timeout_seconds must be > 0")

    adb_path = "adb"
    if settings_raw.get("adb_path") is not None:
        adb_path = _require_str(settings_raw, "adb_path")

    return Settings(
        adb_path=adb_path,
        android_home=_resolve_android_home(settings_raw.get("android_home")),
        command_timeout=command_timeout,
        auto_select=_optional_bool(settings_raw, "auto_select", True),
        listing_format=_listing_format(settings_raw.get("listing_format")),
        polling=polling,
    )


def _resolve_android_home(configured: Any) -> str | None:
    if isinstance(configured, str) and configured.strip():
        return str(Path(configured.strip()).expanduser())
    for name in ANDROID_HOME_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


def _listing_format(value: Any) -> ListingFormat:
    if value is None:
        return ListingFormat.LONG
    try:
        return ListingFormat(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(fmt.value for fmt in ListingFormat)
        raise ValueError(f"Field 'listing_format' must be one of: {choices}") from exc


def _require_str(source: dict[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Field '{key}' must be a non-empty string")
    return value.strip()


def _optional_float(source: dict[str, Any], key: str, default: float) -> float:
    value = source.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Field '{key}' must be numeric")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Field '{key}' must be numeric") from exc


def _optional_bool(source: dict[str, Any], key: str, default: bool) -> bool:
    value = source.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"Field '{key}' must be true or false")
    return value
