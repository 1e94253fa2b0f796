"""Application settings with Pydantic Settings validation.

Secrets (database password) are loaded from the environment or a .env file.
Non-sensitive configuration is loaded from config/*.yaml files, merged and
validated against JSON schemas, and never overrides values set in the
environment.
"""

import json
from datetime import timedelta
from pathlib import Path
from typing import Any, Final, Literal, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from taskfuture.config.logging_config import get_logger

RETENTION_HOURS_DEFAULT: Final[float] = 24.0
POLL_INTERVAL_SECONDS_DEFAULT: Final[float] = 0.1
POLL_MAX_INTERVAL_SECONDS_DEFAULT: Final[float] = 0.5
POLL_BACKOFF_MULTIPLIER_DEFAULT: Final[float] = 1.5
SUBMISSION_LATENCY_BUDGET_MS_DEFAULT: Final[int] = 50
SWEEP_BATCH_SIZE_DEFAULT: Final[int] = 1000
SWEEP_MAX_PASSES_DEFAULT: Final[int] = 100
SWEEP_INTERVAL_SECONDS_DEFAULT: Final[float] = 3600.0

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10
POSTGRES_APPLICATION_NAME_DEFAULT: Final[str] = "taskfuture"

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries; ``override`` wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/.

    Args:
        schema_name: Schema name without extension (e.g., "main")

    Returns:
        JSON Schema dictionary or empty dict if not found
    """
    schema_path = Path("config/schemas") / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(
            "config_schema_load_failed",
            schema=schema_name,
            error=str(e),
        )
        return {}


def validate_config_section(
    config: dict[str, Any], schema_name: str, file_path: str = ""
) -> None:
    """Validate config section against JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs() -> dict[str, Any]:
    """Load and merge all YAML configs from the config/ directory.

    config/main.yaml is loaded first, then every other config/*.yaml in
    alphabetical order. Each file is validated against the schema named after
    its stem when one exists.
    """
    merged_config: dict[str, Any] = {}
    config_dir = Path("config")
    if not config_dir.is_dir():
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    if main_path.exists():
        yaml_files.insert(0, main_path)

    for yaml_file in yaml_files:
        schema_name = yaml_file.stem
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(
                "config_file_load_failed",
                path=str(yaml_file),
                error=str(e),
            )
            continue

        try:
            validate_config_section(file_config, schema_name, str(yaml_file))
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=schema_name,
                error=str(e),
            )
            raise

        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file), schema=schema_name)

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


# (section path in the merged YAML, Settings field)
YAML_FIELD_PATHS: Final[tuple[tuple[tuple[str, ...], str], ...]] = (
    (("store", "backend"), "store_backend"),
    (("store", "sqlite", "path"), "db_path"),
    (("store", "postgres", "host"), "postgres_host"),
    (("store", "postgres", "port"), "postgres_port"),
    (("store", "postgres", "database"), "postgres_database"),
    (("store", "postgres", "user"), "postgres_user"),
    (("store", "postgres", "min_connections"), "postgres_min_connections"),
    (("store", "postgres", "max_connections"), "postgres_max_connections"),
    (("store", "postgres", "statement_timeout_ms"), "postgres_statement_timeout_ms"),
    (("store", "postgres", "ssl_mode"), "postgres_ssl_mode"),
    (("store", "redis", "url"), "redis_url"),
    (("store", "redis", "key_prefix"), "redis_key_prefix"),
    (("store", "redis", "lock_timeout_seconds"), "redis_lock_timeout_seconds"),
    (("store", "redis", "lock_wait_seconds"), "redis_lock_wait_seconds"),
    (("retention", "hours"), "retention_hours"),
    (("polling", "interval_seconds"), "poll_interval_seconds"),
    (("polling", "max_interval_seconds"), "poll_max_interval_seconds"),
    (("polling", "backoff_multiplier"), "poll_backoff_multiplier"),
    (("submission", "latency_budget_ms"), "submission_latency_budget_ms"),
    (("sweep", "batch_size"), "sweep_batch_size"),
    (("sweep", "max_passes"), "sweep_max_passes"),
    (("sweep", "interval_seconds"), "sweep_interval_seconds"),
    (("errors", "trace_max_chars"), "error_trace_max_chars"),
    (("errors", "cause_max_depth"), "error_cause_max_depth"),
    (("logging", "level"), "log_level"),
)


def yaml_config_to_fields(config: dict[str, Any]) -> dict[str, Any]:
    """Flatten the merged YAML config into ``Settings`` field values.

    Missing sections and ``null`` values are skipped so the field default
    applies.
    """
    values: dict[str, Any] = {}
    for path, field_name in YAML_FIELD_PATHS:
        node: Any = config
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if node is not None:
            values[field_name] = node
    return values


class YamlConfigSource(PydanticBaseSettingsSource):
    """Settings source serving values from config/*.yaml.

    Ranked below the environment and .env, so YAML only fills fields the
    environment leaves unset, and the merged result is validated as a whole.
    """

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        config: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(settings_cls)
        merged = load_all_configs() if config is None else config
        self._values = yaml_config_to_fields(merged)

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return dict(self._values)


class Settings(BaseSettings):
    """Application settings.

    Resolved once by the process entry point and passed explicitly to the
    store factory and runtime builder.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        env_prefix="TASKFUTURE_",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    postgres_password: SecretStr | None = Field(
        default=None, description="PostgreSQL password (from .env, optional)"
    )

    # === Store backend ===

    store_backend: Literal["sqlite", "postgres", "redis"] = Field(
        default="sqlite", description="Which task store implementation to use"
    )
    db_path: str = Field(
        default="data/taskfuture.db", description="SQLite database file path"
    )

    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_database: str = Field(
        default="taskfuture", description="PostgreSQL database name"
    )
    postgres_user: str = Field(default="postgres", description="PostgreSQL user")
    postgres_min_connections: int = Field(
        default=POSTGRES_MIN_CONNECTIONS_DEFAULT,
        description="Minimum pooled PostgreSQL connections",
    )
    postgres_max_connections: int = Field(
        default=POSTGRES_MAX_CONNECTIONS_DEFAULT,
        description="Maximum pooled PostgreSQL connections",
    )
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT,
        description="Statement timeout applied to every PostgreSQL session",
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT,
        description="PostgreSQL connect timeout",
    )
    postgres_application_name: str = Field(
        default=POSTGRES_APPLICATION_NAME_DEFAULT,
        description="application_name reported to PostgreSQL",
    )
    postgres_ssl_mode: str | None = Field(
        default=None, description="Optional libpq sslmode"
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    redis_key_prefix: str = Field(
        default="taskfuture", description="Prefix for every Redis key"
    )
    redis_lock_timeout_seconds: float = Field(
        default=5.0,
        description="Expiry of the per-record advisory lock (bounds crashed holders)",
    )
    redis_lock_wait_seconds: float = Field(
        default=2.0,
        description="How long a writer waits for the advisory lock",
    )

    # === Lifecycle ===

    retention_hours: float = Field(
        default=RETENTION_HOURS_DEFAULT,
        description="How long terminal records are kept before the sweep removes them",
    )
    poll_interval_seconds: float = Field(
        default=POLL_INTERVAL_SECONDS_DEFAULT,
        description="Initial Future.get poll interval",
    )
    poll_max_interval_seconds: float = Field(
        default=POLL_MAX_INTERVAL_SECONDS_DEFAULT,
        description="Backoff ceiling; worst-case responsiveness of Future.get",
    )
    poll_backoff_multiplier: float = Field(
        default=POLL_BACKOFF_MULTIPLIER_DEFAULT,
        description="Growth factor applied to the poll interval after each miss",
    )
    submission_latency_budget_ms: int = Field(
        default=SUBMISSION_LATENCY_BUDGET_MS_DEFAULT,
        description="Submission calls slower than this are logged",
    )
    sweep_batch_size: int = Field(
        default=SWEEP_BATCH_SIZE_DEFAULT,
        description="Maximum records deleted per sweep pass",
    )
    sweep_max_passes: int = Field(
        default=SWEEP_MAX_PASSES_DEFAULT,
        description="Pass budget for a single sweep invocation",
    )
    sweep_interval_seconds: float = Field(
        default=SWEEP_INTERVAL_SECONDS_DEFAULT,
        description="Interval between sweeps when the sweep script loops",
    )

    # === Error codec ===

    error_trace_max_chars: int = Field(
        default=8000, description="Stored diagnostic trace is truncated to this size"
    )
    error_cause_max_depth: int = Field(
        default=8, description="Maximum depth of encoded exception cause chains"
    )

    # === Logging ===

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator(
        "retention_hours",
        "poll_interval_seconds",
        "poll_max_interval_seconds",
        "redis_lock_timeout_seconds",
        "redis_lock_wait_seconds",
        "sweep_interval_seconds",
    )
    @classmethod
    def _validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            msg = "value must be positive"
            raise ValueError(msg)
        return value

    @field_validator(
        "sweep_batch_size",
        "sweep_max_passes",
        "submission_latency_budget_ms",
        "error_trace_max_chars",
        "postgres_min_connections",
    )
    @classmethod
    def _validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            msg = "value must be positive"
            raise ValueError(msg)
        return value

    @field_validator("poll_backoff_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: float) -> float:
        if value < 1.0:
            msg = "poll_backoff_multiplier must be >= 1.0"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> "Settings":
        if self.poll_max_interval_seconds < self.poll_interval_seconds:
            msg = "poll_max_interval_seconds must be >= poll_interval_seconds"
            raise ValueError(msg)
        if self.postgres_max_connections < self.postgres_min_connections:
            msg = "postgres_max_connections must be >= postgres_min_connections"
            raise ValueError(msg)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Explicit arguments, then environment, then .env, then YAML files."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSource(settings_cls),
            file_secret_settings,
        )

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.retention_hours)


def get_settings() -> Settings:
    """Resolve settings from the environment and config files.

    Entry points call this once at startup and pass the result along.
    """
    return Settings()


__all__ = [
    "Settings",
    "YamlConfigSource",
    "deep_merge",
    "get_settings",
    "load_all_configs",
    "load_schema",
    "validate_config_section",
    "yaml_config_to_fields",
]
