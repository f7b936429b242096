from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from cronkeeper.db import database_url
from cronkeeper.errors import ConfigError
from cronkeeper.runner import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_SECONDS
from cronkeeper.scheduler import DEFAULT_SHUTDOWN_TIMEOUT_SECONDS, OVERLAP_SKIP, VALID_OVERLAPS

DEFAULT_CONFIG = "cronkeeper.yaml"
DEFAULT_DATABASE = "cronkeeper.db"
DEFAULT_LOG_FILE = "cronkeeper.log"
DEFAULT_TIMEZONE = "UTC"
DATABASE_ENV = "CRONKEEPER_DATABASE"


@dataclass(frozen=True)
class ExecutionSettings:
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    overlap: str = OVERLAP_SKIP


@dataclass(frozen=True)
class ShutdownSettings:
    wait: bool = False
    timeout_seconds: int = DEFAULT_SHUTDOWN_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Settings:
    database: str
    timezone: ZoneInfo
    timezone_name: str
    log_file: Optional[Path]
    execution: ExecutionSettings
    shutdown: ShutdownSettings


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def parse_overlap(value: Any, field_path: str, default: str) -> str:
    if value is None:
        return default
    overlap = ensure_str(value, field_path).lower()
    if overlap not in VALID_OVERLAPS:
        raise ConfigError(
            f'Error: {field_path} must be one of {sorted(VALID_OVERLAPS)}, got "{overlap}".'
        )
    return overlap


def _resolve_database(value: Any, config_dir: Path) -> str:
    """SQLAlchemy URL for the job store; bare paths are SQLite files relative to the config."""
    env_value = os.environ.get(DATABASE_ENV, "").strip()
    raw = env_value or (ensure_str(value, "database") if value is not None else DEFAULT_DATABASE)
    if "://" in raw or raw == ":memory:":
        return database_url(raw)
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() if env_value else config_dir) / path
    return database_url(path.resolve())


def _resolve_log_file(value: Any, config_dir: Path) -> Optional[Path]:
    if value is None:
        value = DEFAULT_LOG_FILE
    if not isinstance(value, str):
        raise ConfigError("Error: log_file must be a path string (empty to disable).")
    if not value.strip():
        return None
    path = Path(value.strip()).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return path.resolve()


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Failed to read {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_settings(payload: Dict[str, Any], config_dir: Path) -> Settings:
    ensure_mapping(
        payload,
        "config",
        {"version", "database", "timezone", "log_file", "execution", "shutdown"},
    )
    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f"Error: Unsupported config version {version!r}; expected 1.")

    timezone_name = ensure_str(payload.get("timezone", DEFAULT_TIMEZONE), "timezone")
    tz = parse_timezone(timezone_name, "timezone")

    execution_raw = ensure_mapping(
        payload.get("execution"),
        "execution",
        {"timeout_seconds", "max_output_bytes", "overlap"},
    )
    execution = ExecutionSettings(
        timeout_seconds=ensure_int(
            execution_raw.get("timeout_seconds"),
            "execution.timeout_seconds",
            DEFAULT_TIMEOUT_SECONDS,
        ),
        max_output_bytes=ensure_int(
            execution_raw.get("max_output_bytes"),
            "execution.max_output_bytes",
            DEFAULT_MAX_OUTPUT_BYTES,
        ),
        overlap=parse_overlap(execution_raw.get("overlap"), "execution.overlap", OVERLAP_SKIP),
    )

    shutdown_raw = ensure_mapping(payload.get("shutdown"), "shutdown", {"wait", "timeout_seconds"})
    shutdown = ShutdownSettings(
        wait=ensure_bool(shutdown_raw.get("wait"), "shutdown.wait", False),
        timeout_seconds=ensure_int(
            shutdown_raw.get("timeout_seconds"),
            "shutdown.timeout_seconds",
            DEFAULT_SHUTDOWN_TIMEOUT_SECONDS,
            0,
        ),
    )

    return Settings(
        database=_resolve_database(payload.get("database"), config_dir),
        timezone=tz,
        timezone_name=timezone_name,
        log_file=_resolve_log_file(payload.get("log_file"), config_dir),
        execution=execution,
        shutdown=shutdown,
    )


def load_settings(config_path: Union[str, Path], required: bool = True) -> Settings:
    """
    Load settings from a YAML file.

    A missing file is an error when `required`, otherwise every setting
    takes its default (paths resolved against the file's directory).
    """
    config_path = Path(config_path)
    if not config_path.exists():
        if required:
            raise ConfigError(f"Error: Config file not found: {config_path}")
        return parse_settings({}, config_path.resolve().parent)
    return parse_settings(_load_config_payload(config_path), config_path.resolve().parent)
