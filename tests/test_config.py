from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from cronkeeper.config import DATABASE_ENV, load_settings
from cronkeeper.errors import ConfigError
from cronkeeper.runner import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT_SECONDS


@pytest.fixture(autouse=True)
def _no_database_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(DATABASE_ENV, raising=False)


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "cronkeeper.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def test_missing_optional_config_uses_defaults(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "cronkeeper.yaml", required=False)

    assert settings.database == f"sqlite:///{(tmp_path / 'cronkeeper.db').resolve()}"
    assert settings.timezone_name == "UTC"
    assert settings.log_file == (tmp_path / "cronkeeper.log").resolve()
    assert settings.execution.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    assert settings.execution.max_output_bytes == DEFAULT_MAX_OUTPUT_BYTES
    assert settings.execution.overlap == "skip"
    assert settings.shutdown.wait is False
    assert settings.shutdown.timeout_seconds == 30


def test_missing_required_config_fails(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Config file not found"):
        load_settings(tmp_path / "nope.yaml")


def test_full_config(tmp_path: Path) -> None:
    path = _write_config(
        tmp_path,
        {
            "version": 1,
            "database": "data/jobs.db",
            "timezone": "Europe/Berlin",
            "log_file": "",
            "execution": {"timeout_seconds": 60, "max_output_bytes": 2048, "overlap": "Parallel"},
            "shutdown": {"wait": True, "timeout_seconds": 0},
        },
    )

    settings = load_settings(path)

    assert settings.database == f"sqlite:///{(tmp_path / 'data' / 'jobs.db').resolve()}"
    assert settings.timezone_name == "Europe/Berlin"
    assert str(settings.timezone) == "Europe/Berlin"
    assert settings.log_file is None
    assert settings.execution.timeout_seconds == 60
    assert settings.execution.max_output_bytes == 2048
    assert settings.execution.overlap == "parallel"
    assert settings.shutdown.wait is True
    assert settings.shutdown.timeout_seconds == 0


def test_memory_database_maps_to_in_memory_sqlite(tmp_path: Path) -> None:
    path = _write_config(tmp_path, {"version": 1, "database": ":memory:"})
    assert load_settings(path).database == "sqlite://"


def test_database_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path, {"version": 1, "database": "ignored.db"})
    monkeypatch.setenv(DATABASE_ENV, "/var/lib/cronkeeper/jobs.db")

    assert load_settings(path).database == "sqlite:////var/lib/cronkeeper/jobs.db"


def test_database_url_is_passed_through(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write_config(tmp_path, {"version": 1, "database": "postgresql://cron:secret@db:5432/cron"})
    assert load_settings(path).database == "postgresql://cron:secret@db:5432/cron"

    monkeypatch.setenv(DATABASE_ENV, "sqlite:////srv/cron.db")
    assert load_settings(path).database == "sqlite:////srv/cron.db"


@pytest.mark.parametrize(
    ("config", "message"),
    [
        ({"version": 2}, "Unsupported config version"),
        ({"version": 1, "jobs": []}, "Unknown keys in config"),
        ({"version": 1, "execution": {"retries": 3}}, r"Unknown keys in execution"),
        ({"version": 1, "execution": {"overlap": "queue"}}, "execution.overlap must be one of"),
        ({"version": 1, "execution": {"timeout_seconds": 0}}, r"execution.timeout_seconds must be >= 1"),
        ({"version": 1, "execution": {"timeout_seconds": True}}, "must be an integer"),
        ({"version": 1, "execution": "fast"}, "execution must be a mapping"),
        ({"version": 1, "shutdown": {"wait": "yes"}}, "shutdown.wait must be true or false"),
        ({"version": 1, "timezone": "Mars/Olympus"}, "Invalid timezone"),
        ({"version": 1, "database": ""}, "database must be a non-empty string"),
        ({"version": 1, "log_file": 5}, "log_file must be a path string"),
    ],
)
def test_invalid_config(tmp_path: Path, config: dict, message: str) -> None:
    path = _write_config(tmp_path, config)
    with pytest.raises(ConfigError, match=message):
        load_settings(path)


def test_malformed_yaml(tmp_path: Path) -> None:
    path = tmp_path / "cronkeeper.yaml"
    path.write_text("version: [1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Failed to parse YAML"):
        load_settings(path)


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "cronkeeper.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Top-level config must be a mapping"):
        load_settings(path)
