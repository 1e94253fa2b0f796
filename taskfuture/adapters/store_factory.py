"""Factory for creating task store instances from settings."""

from typing import cast

from taskfuture.adapters.postgres_pool import PostgresConnectionPool
from taskfuture.adapters.postgres_task_store import PostgresTaskStore
from taskfuture.adapters.redis_task_store import RedisTaskStore
from taskfuture.adapters.sqlite_task_store import SQLiteTaskStore
from taskfuture.config.logging_config import get_logger
from taskfuture.config.settings import Settings
from taskfuture.ports.task_store import TaskStorePort

logger = get_logger(__name__)


def create_task_store(settings: Settings) -> TaskStorePort:
    """Create the task store selected by ``settings.store_backend``.

    Args:
        settings: Settings resolved once at process start

    Returns:
        Store instance (SQLite, PostgreSQL or Redis)

    Raises:
        ValueError: If the backend is unsupported or misconfigured
        StorageUnavailableError: On connection errors
    """
    if settings.store_backend == "sqlite":
        logger.info("task_store_sqlite_selected", path=settings.db_path)
        return cast(
            TaskStorePort,
            SQLiteTaskStore(
                settings.db_path,
                sweep_batch_size=settings.sweep_batch_size,
                sweep_max_passes=settings.sweep_max_passes,
            ),
        )

    elif settings.store_backend == "postgres":
        if not settings.postgres_password:
            raise ValueError(
                "TASKFUTURE_POSTGRES_PASSWORD must be set when using PostgreSQL"
            )

        logger.info(
            "task_store_postgres_selected",
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
        )
        pool = PostgresConnectionPool(
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
            password=settings.postgres_password.get_secret_value(),
            min_connections=settings.postgres_min_connections,
            max_connections=settings.postgres_max_connections,
            statement_timeout_ms=settings.postgres_statement_timeout_ms,
            connect_timeout_seconds=settings.postgres_connect_timeout_seconds,
            application_name=settings.postgres_application_name,
            ssl_mode=settings.postgres_ssl_mode,
        )
        return cast(
            TaskStorePort,
            PostgresTaskStore(
                pool.connection,
                sweep_batch_size=settings.sweep_batch_size,
                sweep_max_passes=settings.sweep_max_passes,
                on_close=pool.close,
            ),
        )

    elif settings.store_backend == "redis":
        logger.info(
            "task_store_redis_selected",
            url=_redact_url(settings.redis_url),
            key_prefix=settings.redis_key_prefix,
        )
        return cast(
            TaskStorePort,
            RedisTaskStore.from_url(
                settings.redis_url,
                key_prefix=settings.redis_key_prefix,
                retention=settings.retention,
                lock_timeout_seconds=settings.redis_lock_timeout_seconds,
                lock_wait_seconds=settings.redis_lock_wait_seconds,
                sweep_batch_size=settings.sweep_batch_size,
                sweep_max_passes=settings.sweep_max_passes,
            ),
        )

    else:
        raise ValueError(
            f"Unsupported store backend: {settings.store_backend}. "
            f"Must be 'sqlite', 'postgres' or 'redis'"
        )


def _redact_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"


__all__ = ["create_task_store"]
