"""
Database connection pool provider for surveybridge.

The pool is an explicitly constructed handle: the application entry point
creates one `PoolProvider`, passes it to every session component that needs
database access, and closes it on shutdown. There is no process-global pool.

Opening the pool includes retry logic for transient connection failures using
tenacity. Individual operations are never retried.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool, PoolTimeout
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from surveybridge.config import Settings, get_settings
from surveybridge.utils.logging import get_logger

log = get_logger(__name__)


def apply_statement_timeout(cursor: Any, timeout_ms: Optional[int]) -> None:
    """
    Bound the duration of every statement in the current transaction.

    SET does not accept bind parameters, so the value is coerced to int
    before being interpolated.
    """
    if not timeout_ms or timeout_ms <= 0:
        return
    cursor.execute(f"SET LOCAL statement_timeout = {int(timeout_ms)}")


class PoolProvider:
    """
    Owner of one psycopg ConnectionPool.

    Thread-safe; `open()` and `close()` are idempotent. Use `connection()` to
    check out a connection that is returned on every exit path.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        dsn_override: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
        timeout: Optional[float] = None,
        pool_factory: Callable[..., ConnectionPool] = ConnectionPool,
    ) -> None:
        self._settings = settings or get_settings()
        self._dsn_override = dsn_override
        self.min_size = min_size if min_size is not None else self._settings.pool_min_size
        self.max_size = max_size if max_size is not None else self._settings.pool_max_size
        self.timeout = timeout if timeout is not None else self._settings.pool_timeout_seconds
        self._pool_factory = pool_factory
        self._pool: Optional[ConnectionPool] = None
        self._lock = threading.Lock()

    @property
    def statement_timeout_ms(self) -> int:
        return self._settings.db_statement_timeout_ms

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def _dsn(self) -> str:
        return self._dsn_override or self._settings.dsn()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((PoolTimeout, psycopg.OperationalError)),
        reraise=True,
    )
    def _open_pool(self) -> ConnectionPool:
        pool = self._pool_factory(
            conninfo=self._dsn(),
            min_size=self.min_size,
            max_size=self.max_size,
            open=False,
        )
        try:
            pool.open(wait=True, timeout=self.timeout)
        except Exception:
            pool.close()
            raise
        return pool

    def open(self) -> ConnectionPool:
        """
        Open the pool if needed and return it.

        Retries up to 3 times with exponential backoff when the server is not
        reachable yet.
        """
        with self._lock:
            if self._pool is None:
                self._pool = self._open_pool()
                log.info(
                    "Opened connection pool",
                    extra={"zone": "DATABASE", "min_size": self.min_size, "max_size": self.max_size},
                )
            return self._pool

    @contextmanager
    def connection(self) -> Generator[Connection, None, None]:
        """
        Check out a connection; it goes back to the pool however the block exits.

        Example
        -------
            provider = PoolProvider(settings)
            with provider.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        pool = self._pool or self.open()
        with pool.connection(timeout=self.timeout) as conn:
            yield conn

    def close(self) -> None:
        """
        Close the pool and release its connections.
        """
        with self._lock:
            if self._pool is None:
                return
            try:
                self._pool.close()
                log.info("Closed connection pool", extra={"zone": "DATABASE"})
            except Exception as exc:  # noqa: BLE001 - teardown is best effort
                log.warning("Failed to close connection pool: %s", exc, extra={"zone": "DATABASE"})
            finally:
                self._pool = None

    def __enter__(self) -> "PoolProvider":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["PoolProvider", "apply_statement_timeout"]
