from __future__ import annotations

from contextlib import AbstractContextManager
from typing import ClassVar

import pytest
from psycopg_pool import PoolTimeout
from tenacity import wait_none

from surveybridge.config import Settings
from surveybridge.infrastructure.db_factory import PoolProvider, apply_statement_timeout

POOL_MIN = 2
POOL_MAX = 4
POOL_TIMEOUT = 3.0
RETRY_ATTEMPTS = 3


class _FakePoolConnectionContext(AbstractContextManager[object]):
    def __init__(self, pool: _FakeConnectionPool, timeout: float | None) -> None:
        self._pool = pool
        self._pool.checkout_timeouts.append(timeout)

    def __enter__(self) -> object:
        if self._pool.closed:
            raise RuntimeError("pool is already closed")
        return object()

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb


class _FakeConnectionPool:
    instances: ClassVar[list[_FakeConnectionPool]] = []
    open_failures: ClassVar[int] = 0

    def __init__(self, conninfo: str, min_size: int, max_size: int, open: bool) -> None:
        self.conninfo = conninfo
        self.min_size = min_size
        self.max_size = max_size
        self.open_on_init = open
        self.open_calls: list[tuple[bool, float]] = []
        self.checkout_timeouts: list[float | None] = []
        self.closed = False
        _FakeConnectionPool.instances.append(self)

    def open(self, wait: bool, timeout: float) -> None:
        self.open_calls.append((wait, timeout))
        if _FakeConnectionPool.open_failures > 0:
            _FakeConnectionPool.open_failures -= 1
            raise PoolTimeout("server not ready")

    def connection(self, timeout: float | None = None) -> _FakePoolConnectionContext:
        return _FakePoolConnectionContext(self, timeout)

    def close(self) -> None:
        self.closed = True


class _RecordingCursor:
    def __init__(self) -> None:
        self.statements: list[str] = []

    def execute(self, sql: str) -> None:
        self.statements.append(sql)


@pytest.fixture(autouse=True)
def _reset_fake_pool(monkeypatch) -> None:
    _FakeConnectionPool.instances = []
    _FakeConnectionPool.open_failures = 0
    monkeypatch.setattr(PoolProvider._open_pool.retry, "wait", wait_none())


@pytest.fixture
def provider() -> PoolProvider:
    settings = Settings(pool_min_size=POOL_MIN, pool_max_size=POOL_MAX, pool_timeout_seconds=POOL_TIMEOUT)
    return PoolProvider(settings, dsn_override="postgresql://test", pool_factory=_FakeConnectionPool)


def test_open_creates_closed_pool_then_opens_with_wait(provider: PoolProvider) -> None:
    provider.open()

    (pool,) = _FakeConnectionPool.instances
    assert pool.conninfo == "postgresql://test"
    assert (pool.min_size, pool.max_size) == (POOL_MIN, POOL_MAX)
    assert pool.open_on_init is False
    assert pool.open_calls == [(True, POOL_TIMEOUT)]
    assert provider.is_open


def test_open_is_idempotent(provider: PoolProvider) -> None:
    first = provider.open()
    second = provider.open()

    assert first is second
    assert len(_FakeConnectionPool.instances) == 1


def test_open_retries_transient_failures(provider: PoolProvider) -> None:
    _FakeConnectionPool.open_failures = RETRY_ATTEMPTS - 1

    provider.open()

    assert len(_FakeConnectionPool.instances) == RETRY_ATTEMPTS
    assert all(pool.closed for pool in _FakeConnectionPool.instances[:-1])
    assert not _FakeConnectionPool.instances[-1].closed


def test_open_gives_up_after_three_attempts(provider: PoolProvider) -> None:
    _FakeConnectionPool.open_failures = RETRY_ATTEMPTS

    with pytest.raises(PoolTimeout):
        provider.open()

    assert len(_FakeConnectionPool.instances) == RETRY_ATTEMPTS
    assert not provider.is_open


def test_connection_opens_lazily_and_passes_timeout(provider: PoolProvider) -> None:
    with provider.connection() as conn:
        assert conn is not None

    (pool,) = _FakeConnectionPool.instances
    assert pool.checkout_timeouts == [POOL_TIMEOUT]


def test_close_is_idempotent_and_context_manager_closes(provider: PoolProvider) -> None:
    with provider:
        pool = _FakeConnectionPool.instances[0]
        assert not pool.closed

    assert pool.closed
    assert not provider.is_open
    provider.close()


def test_statement_timeout_from_settings() -> None:
    provider = PoolProvider(Settings(db_statement_timeout_ms=1234), dsn_override="postgresql://test")

    assert provider.statement_timeout_ms == 1234


@pytest.mark.parametrize("timeout_ms,expected", [(2500, ["SET LOCAL statement_timeout = 2500"]), (0, []), (None, [])])
def test_apply_statement_timeout(timeout_ms: int | None, expected: list[str]) -> None:
    cursor = _RecordingCursor()

    apply_statement_timeout(cursor, timeout_ms)

    assert cursor.statements == expected
