from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from platformdirs import user_config_dir
from pydantic import ValidationError

from codex_sessions.errors import ConfigError
from codex_sessions.storage.models import APP_NAME, MIB, MonitorConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}


def default_config_path() -> Path:
    return Path(user_config_dir(APP_NAME)) / CONFIG_FILENAME


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
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def _env_bool(environ: Mapping[str, str], name: str) -> bool | None:
    value = environ.get(name)
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in TRUTHY:
        return True
    if normalized in FALSY:
        return False
    return None


def _env_int(environ: Mapping[str, str], name: str) -> int | None:
    value = environ.get(name)
    if value is None:
        return None
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return None


def _env_mb(environ: Mapping[str, str], name: str) -> int | None:
    value = environ.get(name)
    if value is None:
        return None
    try:
        megabytes = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(megabytes):
        return None
    return int(max(0.0, megabytes) * MIB)


def _first(*values: int | None) -> int | None:
    for value in values:
        if value is not None:
            return value
    return None


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``CODEX_*`` environment variables into a config overlay.

    Unparseable values are ignored; negative sizes clamp to zero.
    """
    overlay: dict[str, Any] = {}
    scan: dict[str, Any] = {}

    budget = _first(
        _env_int(environ, "CODEX_SCAN_BUDGET_BYTES"),
        _env_mb(environ, "CODEX_SCAN_BUDGET_MB"),
    )
    if budget is not None:
        scan["scan_budget_bytes"] = budget

    for field_name, variable in (
        ("tail_threshold_bytes", "CODEX_TAIL_THRESHOLD_MB"),
        ("tail_bytes", "CODEX_TAIL_BYTES_MB"),
        ("head_bytes", "CODEX_HEAD_BYTES_MB"),
    ):
        value = _env_mb(environ, variable)
        if value is not None:
            scan[field_name] = value

    max_line = _first(
        _env_int(environ, "CODEX_MAX_LINE_BYTES") or None,
        _env_mb(environ, "CODEX_MAX_LINE_MB") or None,
    )
    if max_line is not None:
        scan["max_line_bytes"] = max_line

    if scan:
        overlay["scan"] = scan

    sessions_dir = environ.get("CODEX_SESSIONS_DIR", "").strip()
    codex_home = environ.get("CODEX_HOME", "").strip()
    if sessions_dir:
        overlay["sessions_dir"] = sessions_dir
    elif codex_home:
        overlay["sessions_dir"] = str(Path(codex_home) / "sessions")

    for field_name, variable in (
        ("db_path", "CODEX_SESSIONS_DB"),
        ("cache_dir", "CODEX_SESSIONS_CACHE_DIR"),
    ):
        value = environ.get(variable, "").strip()
        if value:
            overlay[field_name] = value

    for field_name, variable in (
        ("enable_polling", "CODEX_ENABLE_POLLING"),
        ("status_log", "CODEX_STATUS_LOG"),
        ("debug_log", "CODEX_DEBUG_LOG"),
    ):
        flag = _env_bool(environ, variable)
        if flag is not None:
            overlay[field_name] = flag

    return overlay


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> MonitorConfig:
    """Resolve defaults, ``config.yaml`` (with ``extends``) and ``CODEX_*`` env vars."""
    environ = os.environ if environ is None else environ
    main_path = config_path or default_config_path()
    data = _load_yaml(main_path)

    merged: dict[str, Any] = {}
    for extend_path in data.get("extends") or []:
        path = Path(extend_path).expanduser()
        if not path.is_absolute():
            path = (main_path.parent / path).resolve()
        merged = _deep_merge(merged, _load_yaml(path))

    merged = _deep_merge(merged, data)
    merged = _deep_merge(merged, env_overrides(environ))

    try:
        config = MonitorConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    config.sessions_dir = config.sessions_dir.expanduser()
    config.cache_dir = config.cache_dir.expanduser()
    config.db_path = config.db_path.expanduser()
    logger.debug("loaded config from %s", main_path)
    return config
