"""
Pytest configuration for surveybridge.

Provides fixtures for:
- An in-memory stand-in for PostgreSQL that interprets the statements the
  operations facade and the log queue emit (unit tests)
- Loggers, queues and facades wired to that stand-in
- Database connection management for integration tests
"""

from __future__ import annotations

import copy
import os
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

import psycopg
import pytest

from surveybridge.config import Settings, get_settings
from surveybridge.infrastructure.db_operations import DatabaseOperations
from surveybridge.infrastructure.log_queue import LogQueue
from surveybridge.survey_logger import SurveyLogger

FAKE_NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
SESSION_ID = "session-123"
SURVEY_NAME = "responses"

_IDENT = r'"?([a-z0-9_]+)"?'
_CREATE_RE = re.compile(rf"^CREATE TABLE (IF NOT EXISTS )?{_IDENT} \((.*)\)$")
_ALTER_RE = re.compile(rf"^ALTER TABLE {_IDENT} ADD COLUMN IF NOT EXISTS {_IDENT} (.+)$")
_INSERT_RE = re.compile(rf"^INSERT INTO {_IDENT} \(([^)]*)\) VALUES (.+?)( RETURNING id)?$")
_SELECT_RE = re.compile(
    rf"^SELECT (.+?) FROM {_IDENT}(?: WHERE (.+?))?(?: ORDER BY (.+?))?( LIMIT %s)?$"
)
_UPDATE_RE = re.compile(rf"^UPDATE {_IDENT} SET (.+?) WHERE (.+)$")


def _name(token: str) -> str:
    return token.strip().strip('"')


def _unwrap(value: Any) -> Any:
    # psycopg Jsonb wrappers keep the python object in `.obj`
    return getattr(value, "obj", value)


class FakeDatabase:
    """
    Tables as {name: {"columns": {col: type}, "rows": [dict]}}.

    Statements are recorded in `statements`; any statement containing
    `fail_on` raises an OperationalError.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.statements: List[Tuple[str, Any]] = []
        self.fail_on: Optional[str] = None
        self._next_id: Dict[str, int] = {}

    # -- helpers for tests -----------------------------------------------------

    def add_table(self, name: str, rows: Sequence[Dict[str, Any]], columns: Optional[Sequence[str]] = None) -> None:
        cols = list(columns or (rows[0].keys() if rows else []))
        self.tables[name] = {
            "columns": {c: "TEXT" for c in cols},
            "rows": [dict(r) for r in rows],
        }
        self._next_id[name] = len(rows) + 1

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables[table]["rows"]

    def column_types(self, table: str) -> Dict[str, str]:
        return dict(self.tables[table]["columns"])

    def executed(self, prefix: str) -> List[str]:
        return [sql for sql, _ in self.statements if sql.startswith(prefix)]

    # -- statement interpreter -------------------------------------------------

    def _table(self, name: str) -> Dict[str, Any]:
        if name not in self.tables:
            raise psycopg.ProgrammingError(f'relation "{name}" does not exist')
        return self.tables[name]

    def execute(self, sql: str, params: Optional[Sequence[Any]]) -> Tuple[List[Any], Optional[List[str]], int]:
        statement = " ".join(sql.split())
        self.statements.append((statement, params))
        if self.fail_on and self.fail_on in statement:
            raise psycopg.OperationalError(f"simulated failure on: {self.fail_on}")
        params = list(params or [])

        if "information_schema.tables" in statement:
            return [(params[0] in self.tables,)], None, 1
        if "information_schema.columns" in statement:
            table = self.tables.get(params[0])
            return [(c,) for c in (table["columns"] if table else [])], None, 0

        match = _CREATE_RE.match(statement)
        if match:
            if_not_exists, name, body = match.groups()
            if name in self.tables:
                if if_not_exists:
                    return [], None, 0
                raise psycopg.ProgrammingError(f'relation "{name}" already exists')
            columns = {}
            for definition in body.split(", "):
                col, col_type = definition.split(" ", 1)
                columns[_name(col)] = col_type
            self.tables[name] = {"columns": columns, "rows": []}
            self._next_id[name] = 1
            return [], None, 0

        match = _ALTER_RE.match(statement)
        if match:
            name, col, col_type = match.groups()
            table = self._table(name)
            if col not in table["columns"]:
                table["columns"][col] = col_type
                for row in table["rows"]:
                    row.setdefault(col, None)
            return [], None, 0

        match = _INSERT_RE.match(statement)
        if match:
            name, cols, _, returning = match.groups()
            table = self._table(name)
            names = [_name(c) for c in cols.split(",")]
            missing = [c for c in names if c not in table["columns"]]
            if missing:
                raise psycopg.ProgrammingError(f'column "{missing[0]}" does not exist')
            ids = []
            for start in range(0, len(params), len(names)):
                row = {c: None for c in table["columns"]}
                for col in ("date_created", "date_updated"):
                    if col in row:
                        row[col] = FAKE_NOW
                row.update({c: _unwrap(v) for c, v in zip(names, params[start : start + len(names)])})
                row["id"] = self._next_id[name]
                self._next_id[name] += 1
                table["rows"].append(row)
                ids.append(row["id"])
            return ([(ids[-1],)] if returning else []), None, len(ids)

        match = _SELECT_RE.match(statement)
        if match:
            cols, name, where, order, limit = match.groups()
            table = self._table(name)
            rows = [r for r in table["rows"] if self._matches(r, where, params)]
            if order:
                for part in reversed(order.split(", ")):
                    col, direction = part.rsplit(" ", 1)
                    rows.sort(key=lambda r, c=_name(col): (r.get(c) is None, r.get(c)), reverse=direction == "DESC")
            if limit:
                rows = rows[: params[-1]]
            names = list(table["columns"]) if cols == "*" else [_name(c) for c in cols.split(",")]
            return [{c: r.get(c) for c in names} for r in rows], names, len(rows)

        match = _UPDATE_RE.match(statement)
        if match:
            name, assignments, where = match.groups()
            table = self._table(name)
            parts = [p.split(" = ", 1) for p in assignments.split(", ")]
            values: Dict[str, Any] = {}
            cursor = 0
            for col, expr in parts:
                if expr == "%s":
                    values[_name(col)] = _unwrap(params[cursor])
                    cursor += 1
                else:
                    values[_name(col)] = FAKE_NOW
            affected = 0
            for row in table["rows"]:
                if self._matches(row, where, params[cursor:]):
                    row.update(values)
                    affected += 1
            return [], None, affected

        # SET LOCAL, functions, triggers
        return [], None, 0

    @staticmethod
    def _matches(row: Dict[str, Any], where: Optional[str], params: Sequence[Any]) -> bool:
        if not where:
            return True
        index = 0
        for clause in where.split(" AND "):
            if clause.endswith(" IS NULL"):
                if row.get(_name(clause[: -len(" IS NULL")])) is not None:
                    return False
                continue
            col, _ = clause.split(" = ", 1)
            if row.get(_name(col)) != _unwrap(params[index]):
                return False
            index += 1
        return True


class FakeCursor:
    def __init__(self, conn: "FakeConnection", dict_rows: bool) -> None:
        self._conn = conn
        self._dict_rows = dict_rows
        self._results: List[Any] = []
        self.description: Optional[List[SimpleNamespace]] = None
        self.rowcount = -1

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        self._conn.begin()
        results, names, rowcount = self._conn.db.execute(sql, params)
        self.rowcount = rowcount
        self.description = [SimpleNamespace(name=n) for n in names] if names is not None else None
        if names is not None and not self._dict_rows:
            results = [tuple(r[n] for n in names) for r in results]
        self._results = list(results)

    def fetchone(self) -> Any:
        return self._results.pop(0) if self._results else None

    def fetchall(self) -> List[Any]:
        results, self._results = self._results, []
        return results


class FakeConnection:
    """Snapshot-based transactions: rollback restores the state at BEGIN."""

    def __init__(self, db: FakeDatabase) -> None:
        self.db = db
        self._snapshot: Optional[Tuple[Dict[str, Any], Dict[str, int]]] = None
        self.commits = 0
        self.rollbacks = 0

    @property
    def in_transaction(self) -> bool:
        return self._snapshot is not None

    def begin(self) -> None:
        if self._snapshot is None:
            self._snapshot = (copy.deepcopy(self.db.tables), dict(self.db._next_id))

    def cursor(self, row_factory: Any = None) -> FakeCursor:
        return FakeCursor(self, dict_rows=row_factory is not None)

    def commit(self) -> None:
        self.commits += 1
        self._snapshot = None

    def rollback(self) -> None:
        self.rollbacks += 1
        if self._snapshot is not None:
            self.db.tables, self.db._next_id = self._snapshot
            self._snapshot = None


class FakePool:
    """Mimics the PoolProvider surface used by the facade and the log queue."""

    def __init__(self, db: FakeDatabase, statement_timeout_ms: int = 5000) -> None:
        self.db = db
        self.statement_timeout_ms = statement_timeout_ms
        self.checkouts = 0
        self.returns = 0
        self.connections: List[FakeConnection] = []

    @contextmanager
    def connection(self) -> Generator[FakeConnection, None, None]:
        conn = FakeConnection(self.db)
        self.connections.append(conn)
        self.checkouts += 1
        try:
            yield conn
        finally:
            if conn.in_transaction:
                conn.rollback()
            self.returns += 1


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_pool(fake_db: FakeDatabase) -> FakePool:
    return FakePool(fake_db)


@pytest.fixture
def log_queue(fake_pool: FakePool) -> LogQueue:
    return LogQueue(fake_pool, "survey_logs", flush_interval=0.05)


@pytest.fixture
def survey_logger(log_queue: LogQueue) -> SurveyLogger:
    return SurveyLogger(log_queue, SESSION_ID, SURVEY_NAME, echo=False)


@pytest.fixture
def db_ops(fake_pool: FakePool, survey_logger: SurveyLogger) -> DatabaseOperations:
    return DatabaseOperations(
        fake_pool,
        SESSION_ID,
        survey_logger,
        request_headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
    )


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "surveybridge_test"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return test_settings.dsn()


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False
