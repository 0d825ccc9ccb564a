from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from agent_sync.storage.models import SyncSettings

HOME_ENV = "AGENT_SYNC_HOME"
SYNC_ENABLED_ENV = "AGENT_SYNC_SESSION_SYNC_ENABLED"
SYNC_INTERVAL_ENV = "AGENT_SYNC_SESSION_SYNC_INTERVAL"
DRY_RUN_ENV = "AGENT_SYNC_SESSION_DRY_RUN"
LOG_LEVEL_ENV = "AGENT_SYNC_LOG_LEVEL"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text()) or {}


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got {value!r}")


def default_home(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    raw = env.get(HOME_ENV)
    return Path(raw).expanduser() if raw else Path.home() / ".agent-sync"


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    sync: dict[str, Any] = {}
    if env.get(SYNC_ENABLED_ENV):
        sync["enabled"] = parse_bool(env[SYNC_ENABLED_ENV])
    if env.get(SYNC_INTERVAL_ENV):
        sync["interval_seconds"] = float(env[SYNC_INTERVAL_ENV])
    if env.get(DRY_RUN_ENV):
        sync["dry_run"] = parse_bool(env[DRY_RUN_ENV])

    overrides: dict[str, Any] = {}
    if sync:
        overrides["sync"] = sync
    if env.get(LOG_LEVEL_ENV):
        overrides["logging"] = {"level": env[LOG_LEVEL_ENV]}
    return overrides


def load_settings(
    home_dir: Path | None = None, env: Mapping[str, str] | None = None
) -> SyncSettings:
    """Load <home>/config.yaml (with optional extends), then apply environment overrides.

    The environment is read once, here.
    """
    env = os.environ if env is None else env
    home = home_dir or default_home(env)
    data = _load_yaml(home / "config.yaml")

    extends = data.get("extends") or []
    merged: dict[str, Any] = {}

    for extend_path in extends:
        path = Path(extend_path).expanduser()
        if not path.is_absolute():
            path = (home / path).resolve()
        merged = _deep_merge(merged, _load_yaml(path))

    merged = _deep_merge(merged, data)
    merged = _deep_merge(merged, _env_overrides(env))
    merged["home_dir"] = home
    return SyncSettings.model_validate(merged)
