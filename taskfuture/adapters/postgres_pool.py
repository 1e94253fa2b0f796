"""Pooled psycopg2 connections for the PostgreSQL task store."""

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock
from time import sleep
from typing import Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool

from taskfuture.config.logging_config import get_logger
from taskfuture.domain.exceptions import StorageUnavailableError

POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0

logger = get_logger(__name__)


class PostgresConnectionPool:
    """Thread-safe connection pool handing out connections as context managers."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_connections: int = 1,
        max_connections: int = 10,
        statement_timeout_ms: int = 10_000,
        connect_timeout_seconds: int = 10,
        application_name: str = "taskfuture",
        ssl_mode: str | None = None,
    ) -> None:
        if min_connections <= 0:
            raise ValueError("min_connections must be positive")
        if max_connections < min_connections:
            raise ValueError("max_connections must be >= min_connections")

        self._database = database
        self._max_connections = max_connections
        self._acquire_max_attempts = POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT
        self._in_use = 0
        self._closed = False
        self._lock = Lock()

        conn_kwargs: dict[str, Any] = {
            "host": host,
            "port": port,
            "database": database,
            "user": user,
            "password": password,
            "connect_timeout": connect_timeout_seconds,
            "options": (
                f"-c statement_timeout={statement_timeout_ms} "
                f"-c application_name={application_name}"
            ),
        }
        if ssl_mode:
            conn_kwargs["sslmode"] = ssl_mode

        try:
            self._pool = psycopg2_pool.ThreadedConnectionPool(
                min_connections, max_connections, **conn_kwargs
            )
        except PsycopgError as exc:
            raise StorageUnavailableError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        logger.info(
            "postgres_pool_initialized",
            host=host,
            port=port,
            database=database,
            min_connections=min_connections,
            max_connections=max_connections,
            statement_timeout_ms=statement_timeout_ms,
        )

    @contextmanager
    def connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection; broken connections are discarded on return."""

        conn = self._acquire()
        broken = False
        try:
            yield conn
        except PsycopgError:
            broken = bool(conn.closed)
            if not broken:
                conn.rollback()
            raise
        finally:
            self._release(conn, close=broken)

    def close(self) -> None:
        self._pool.closeall()
        with self._lock:
            self._in_use = 0
            self._closed = True
        logger.info("postgres_pool_closed", database=self._database)

    def _acquire(self) -> extensions.connection:
        """Take a pooled connection, waiting briefly while the pool is exhausted.

        Only the wait for a free slot is repeated; nothing has been sent to the
        server yet.
        """

        if self._closed:
            raise StorageUnavailableError("PostgreSQL connection pool is closed")

        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                conn = self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= self._acquire_max_attempts:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._max_connections,
                        in_use=self._in_use,
                    )
                    raise StorageUnavailableError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc

                logger.warning(
                    "postgres_pool_exhausted_retry",
                    attempt=attempt,
                    wait_seconds=delay,
                    in_use=self._in_use,
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)
                continue
            except PsycopgError as exc:
                raise StorageUnavailableError(
                    f"Failed to open PostgreSQL connection: {exc}"
                ) from exc

            with self._lock:
                self._in_use += 1
            return conn

    def _release(self, conn: extensions.connection, *, close: bool) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed",
                database=self._database,
                close=close,
                exc_info=True,
            )
        finally:
            with self._lock:
                if self._in_use > 0:
                    self._in_use -= 1


__all__ = ["PostgresConnectionPool"]
