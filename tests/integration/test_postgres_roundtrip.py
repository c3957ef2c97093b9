"""
Integration tests for the persistence layer.

These tests run against a real PostgreSQL instance and verify that:
1. Response tables are created with tracking columns and the update trigger
2. Rows are appended, read back and updated by id
3. The audit log queue persists its entries

Run with: RUN_INTEGRATION_TESTS=1 pytest tests/integration/
"""

from __future__ import annotations

import os
import uuid

import psycopg
import pytest

from surveybridge.config import Settings
from surveybridge.infrastructure.db_factory import PoolProvider
from surveybridge.infrastructure.db_operations import DatabaseOperations
from surveybridge.infrastructure.log_queue import LogQueue
from surveybridge.survey_logger import SurveyLogger

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        os.getenv("RUN_INTEGRATION_TESTS", "0") != "1",
        reason="Integration tests require RUN_INTEGRATION_TESTS=1 and reachable Postgres",
    ),
]


@pytest.fixture
def table_names(test_dsn: str, db_connection_available: bool):
    if not db_connection_available:
        pytest.skip("PostgreSQL is not reachable")
    suffix = uuid.uuid4().hex[:8]
    names = {"write": f"responses_{suffix}", "log": f"survey_logs_{suffix}"}
    yield names
    with psycopg.connect(test_dsn) as conn:
        for name in names.values():
            conn.execute(f'DROP TABLE IF EXISTS "{name}"')


@pytest.fixture
def provider(test_settings: Settings, table_names):
    with PoolProvider(test_settings) as pool:
        yield pool


@pytest.fixture
def queue(provider: PoolProvider, table_names) -> LogQueue:
    return LogQueue(provider, table_names["log"], flush_interval=0.1)


@pytest.fixture
def ops(provider: PoolProvider, queue: LogQueue) -> DatabaseOperations:
    logger = SurveyLogger(queue, "integration-session", "integration", echo=False)
    return DatabaseOperations(provider, "integration-session", logger, {"X-Real-IP": "192.0.2.10"})


def test_create_append_read_update(ops: DatabaseOperations, table_names) -> None:
    row = {"package_name": "surveybridge", "rating": 4, "tags": ["db", "survey"], "score": 4.5}

    table = ops.create_table_if_absent(table_names["write"], row)
    row_id = ops.append_row(table, row)
    updated = ops.update_by_id(table, row_id, {"duration_save": 0.25})
    result = ops.read_filtered(table, filters={"id": row_id})

    assert updated == 1
    (stored,) = result.rows
    assert stored["package_name"] == "surveybridge"
    assert stored["rating"] == 4
    assert stored["tags"] == ["db", "survey"]
    assert stored["ip_address"] == "192.0.2.10"
    assert stored["session_id"] == "integration-session"
    assert stored["date_created"] is not None
    assert stored["date_updated"] >= stored["date_created"]


def test_append_adds_new_columns(ops: DatabaseOperations, table_names) -> None:
    table = ops.create_table_if_absent(table_names["write"], {"first": "a"})
    ops.append_row(table, {"first": "a"})

    ops.append_row(table, {"first": "b", "second": True})

    assert "second" in ops.table_columns(table)
    assert ops.read_filtered(table, columns=["first"], order_by=["first"]).column("first") == ["a", "b"]


def test_log_queue_persists_entries(ops: DatabaseOperations, queue: LogQueue, provider: PoolProvider, table_names) -> None:
    ops.logger.log_message("integration entry", zone="SURVEY")

    assert queue.flush() >= 1

    with provider.connection() as conn:
        cur = conn.execute(f'SELECT message FROM "{table_names["log"]}"')
        messages = [row[0] for row in cur.fetchall()]
    assert "integration entry" in messages
    assert len(queue) == 0
