"""
Process-wide queue of audit log entries with periodic batched persistence.

Sessions enqueue `LogEntry` records without touching the database; a daemon
timer thread flushes them every `flush_interval` seconds in one multi-row
INSERT. The queue writes through the pool directly and reports its own
failures to the console only, so logging never recurses into itself.
"""

from __future__ import annotations

import threading
from typing import List, Optional

from surveybridge.domain.models import LOG_COLUMNS, LogEntry, chunk_rows
from surveybridge.domain.schema import quote_identifier, sanitize_identifier
from surveybridge.infrastructure.db_factory import PoolProvider, apply_statement_timeout
from surveybridge.utils.logging import get_logger

log = get_logger(__name__)

# 11 parameters per row keeps each statement under the 65535 bind limit.
MAX_BATCH_ROWS = 5000

_LOG_TABLE_COLUMNS = (
    "id SERIAL PRIMARY KEY",
    '"session_id" TEXT',
    '"survey_name" TEXT',
    '"timestamp" TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP',
    '"zone" TEXT',
    '"message" TEXT',
    '"type" TEXT',
    '"sql_statement" TEXT',
    '"duration_load" NUMERIC',
    '"duration_complete" NUMERIC',
    '"duration_save" NUMERIC',
    '"ip_address" VARCHAR(45)',
)


class LogQueue:
    """
    Shared, thread-safe buffer of log entries.

    Parameters
    ----------
    pool : PoolProvider
        Pool used for the batched inserts.
    log_table : str
        Destination table (sanitized).
    flush_interval : float
        Seconds between timer-driven flushes.
    max_batch_rows : int
        Rows per INSERT statement; larger flushes are chunked inside one
        transaction.
    """

    zone = "LOGGER"

    def __init__(
        self,
        pool: PoolProvider,
        log_table: str = "survey_logs",
        flush_interval: float = 1.0,
        max_batch_rows: int = MAX_BATCH_ROWS,
    ) -> None:
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        self._pool = pool
        self.log_table = sanitize_identifier(log_table)
        self.flush_interval = flush_interval
        self.max_batch_rows = max_batch_rows
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()
        self._flush_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._table_ready = False

    def ensure_table(self) -> bool:
        """Create the log table if absent. Returns False (console-logged) on failure."""
        statement = (
            f"CREATE TABLE IF NOT EXISTS {quote_identifier(self.log_table)} "
            f"({', '.join(_LOG_TABLE_COLUMNS)})"
        )
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(statement)
                conn.commit()
        except Exception as exc:  # noqa: BLE001 - logging must not take the caller down
            log.error("Failed to ensure log table '%s': %s", self.log_table, exc, extra={"zone": self.zone})
            return False
        self._table_ready = True
        log.debug("Log table '%s' ready", self.log_table, extra={"zone": self.zone})
        return True

    def put(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def pending(self) -> List[LogEntry]:
        """Copy of the entries not yet persisted, oldest first."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _insert(self, entries: List[LogEntry]) -> None:
        columns = ", ".join(quote_identifier(c) for c in LOG_COLUMNS)
        row_placeholder = "(" + ", ".join(["%s"] * len(LOG_COLUMNS)) + ")"
        with self._pool.connection() as conn:
            try:
                with conn.cursor() as cur:
                    apply_statement_timeout(cur, getattr(self._pool, "statement_timeout_ms", None))
                    for batch in chunk_rows(entries, self.max_batch_rows):
                        statement = (
                            f"INSERT INTO {quote_identifier(self.log_table)} ({columns}) "
                            f"VALUES {', '.join([row_placeholder] * len(batch))}"
                        )
                        params = [value for entry in batch for value in entry.as_row()]
                        cur.execute(statement, params)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def flush(self) -> int:
        """
        Persist every queued entry in insertion order.

        Returns the number of entries written; 0 when the queue is empty, when
        another flush is already running, or when the insert failed (the
        entries are retained for the next attempt).
        """
        if not self._flush_guard.acquire(blocking=False):
            return 0
        try:
            with self._lock:
                snapshot = list(self._entries)
            if not snapshot:
                return 0
            if not self._table_ready and not self.ensure_table():
                return 0
            try:
                self._insert(snapshot)
            except Exception as exc:  # noqa: BLE001 - entries stay queued for retry
                log.error(
                    "Failed to flush %d log entries: %s", len(snapshot), exc, extra={"zone": self.zone}
                )
                return 0
            with self._lock:
                del self._entries[: len(snapshot)]
            log.debug("Flushed %d log entries", len(snapshot), extra={"zone": self.zone})
            return len(snapshot)
        finally:
            self._flush_guard.release()

    def _run(self) -> None:
        while not self._stop_event.wait(self.flush_interval):
            self.flush()

    def start(self) -> None:
        """Ensure the log table, then start the background flush timer (idempotent)."""
        if self._thread is not None and self._thread.is_alive():
            return
        if not self._table_ready:
            self.ensure_table()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="surveybridge-log-flush", daemon=True)
        self._thread.start()

    def stop(self, drain: bool = True) -> int:
        """Stop the timer and, when `drain` is set, flush what is left."""
        self._stop_event.set()
        if self._thread is not None:
            # a tick that is mid-flush holds the flush guard until it returns
            self._thread.join()
            self._thread = None
        return self.flush() if drain else 0

    def __enter__(self) -> "LogQueue":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop(drain=True)


__all__ = ["LogQueue", "MAX_BATCH_ROWS"]
