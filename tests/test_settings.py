"""Tests for configuration loading and settings resolution."""

import json
from datetime import timedelta
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from taskfuture.config.settings import (
    Settings,
    deep_merge,
    load_all_configs,
    load_schema,
    validate_config_section,
    yaml_config_to_fields,
)

REPO_ROOT = Path(__file__).resolve().parent.parent


def _write_config(root: Path, name: str, content: dict) -> None:
    config_dir = root / "config"
    config_dir.mkdir(exist_ok=True)
    with open(config_dir / f"{name}.yaml", "w", encoding="utf-8") as f:
        yaml.safe_dump(content, f)


def _write_schema(root: Path, name: str, schema: dict) -> None:
    schema_dir = root / "config" / "schemas"
    schema_dir.mkdir(parents=True, exist_ok=True)
    with open(schema_dir / f"{name}.schema.json", "w", encoding="utf-8") as f:
        json.dump(schema, f)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TASKFUTURE_STORE_BACKEND",
        "TASKFUTURE_RETENTION_HOURS",
        "TASKFUTURE_POLL_INTERVAL_SECONDS",
        "TASKFUTURE_POLL_MAX_INTERVAL_SECONDS",
        "TASKFUTURE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_deep_merge_nested() -> None:
    base = {"store": {"backend": "sqlite", "sqlite": {"path": "a.db"}}}
    override = {"store": {"sqlite": {"path": "b.db"}}}

    assert deep_merge(base, override) == {
        "store": {"backend": "sqlite", "sqlite": {"path": "b.db"}}
    }


def test_deep_merge_lists_replaced() -> None:
    assert deep_merge({"items": [1, 2]}, {"items": [3]}) == {"items": [3]}


def test_defaults_without_config_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.store_backend == "sqlite"
    assert settings.retention == timedelta(hours=24)
    assert settings.poll_interval_seconds == 0.1
    assert settings.poll_max_interval_seconds == 0.5
    assert settings.submission_latency_budget_ms == 50
    assert settings.sweep_batch_size == 1000


def test_yaml_values_apply_as_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(
        tmp_path,
        "main",
        {
            "store": {"backend": "redis", "redis": {"key_prefix": "jobs"}},
            "retention": {"hours": 2},
            "polling": {"interval_seconds": 0.2, "max_interval_seconds": 1.0},
        },
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.store_backend == "redis"
    assert settings.redis_key_prefix == "jobs"
    assert settings.retention_hours == 2
    assert settings.poll_interval_seconds == 0.2
    assert settings.poll_max_interval_seconds == 1.0


def test_environment_overrides_yaml(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, "main", {"retention": {"hours": 2}})
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKFUTURE_RETENTION_HOURS", "48")

    assert Settings().retention_hours == 48


def test_later_files_override_main(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, "main", {"sweep": {"batch_size": 10, "max_passes": 3}})
    _write_config(tmp_path, "overrides", {"sweep": {"batch_size": 20}})
    monkeypatch.chdir(tmp_path)

    config = load_all_configs()

    assert config["sweep"] == {"batch_size": 20, "max_passes": 3}


def test_load_all_configs_rejects_invalid_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_schema(
        tmp_path,
        "main",
        {"type": "object", "properties": {"retention": {"type": "object"}}},
    )
    _write_config(tmp_path, "main", {"retention": "forever"})
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValueError, match="Config validation failed"):
        load_all_configs()


def test_load_schema_missing_returns_empty(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    assert load_schema("nonexistent") == {}


def test_validate_config_section_without_schema_is_noop(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    validate_config_section({"anything": 1}, "missing")


def test_shipped_config_matches_schema_and_defaults(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(REPO_ROOT)

    settings = Settings()

    assert settings.store_backend == "sqlite"
    assert settings.retention_hours == 24
    assert settings.sweep_max_passes == 100
    assert settings.error_trace_max_chars == 8000


@pytest.mark.parametrize(
    "field",
    ["retention_hours", "poll_interval_seconds", "sweep_batch_size"],
)
def test_non_positive_values_are_rejected(
    field: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_poll_ceiling_below_interval_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValidationError):
        Settings(poll_interval_seconds=1.0, poll_max_interval_seconds=0.5)


def test_bounds_are_checked_across_environment_and_yaml(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, "main", {"polling": {"max_interval_seconds": 2.0}})
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKFUTURE_POLL_INTERVAL_SECONDS", "1.0")

    settings = Settings()

    assert settings.poll_interval_seconds == 1.0
    assert settings.poll_max_interval_seconds == 2.0


def test_yaml_interval_above_environment_ceiling_is_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, "main", {"polling": {"interval_seconds": 0.3}})
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKFUTURE_POLL_MAX_INTERVAL_SECONDS", "0.2")

    with pytest.raises(ValidationError, match="poll_max_interval_seconds"):
        Settings()


def test_invalid_yaml_value_is_rejected_by_field_validation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(tmp_path, "main", {"retention": {"hours": 0}})
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValidationError):
        Settings()


def test_yaml_config_to_fields_skips_missing_and_null_values() -> None:
    config = {
        "store": {"backend": "postgres", "postgres": {"ssl_mode": None}},
        "polling": "not-a-section",
    }

    assert yaml_config_to_fields(config) == {"store_backend": "postgres"}
