"""
Transaction-scoped database operations for survey responses.

`DatabaseOperations` wraps a `PoolProvider` and is constructed once per
session. Every public operation runs through `operate()`, which checks out a
connection, bounds the statement time, commits on success, and on failure
rolls back, logs the error with its context, returns the connection to the
pool and raises `DatabaseOperationError`. Nothing is retried automatically.

Response tables evolve append-only: columns are added when a response
introduces a new field, never removed or retyped.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from psycopg import Connection
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from surveybridge.domain.models import QueryResult
from surveybridge.domain.schema import column_type_for, quote_identifier, safe_identifier, sanitize_identifier
from surveybridge.errors import DatabaseOperationError
from surveybridge.infrastructure.db_factory import PoolProvider, apply_statement_timeout

if TYPE_CHECKING:
    from surveybridge.survey_logger import SurveyLogger

T = TypeVar("T")

UNKNOWN_IP = "unknown"

# System columns appended to every response table.
TRACKING_COLUMNS: Dict[str, str] = {
    "date_created": "TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
    "date_updated": "TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
    "session_id": "TEXT",
    "ip_address": "VARCHAR(45)",
    "duration_load": "NUMERIC",
    "duration_complete": "NUMERIC",
    "duration_save": "NUMERIC",
}
SYSTEM_COLUMNS = frozenset({"id", *TRACKING_COLUMNS})

TOUCH_FUNCTION = "surveybridge_touch_date_updated"

_TOUCH_FUNCTION_SQL = f"""
CREATE OR REPLACE FUNCTION {TOUCH_FUNCTION}() RETURNS TRIGGER AS $$
BEGIN
    NEW.date_updated = CURRENT_TIMESTAMP;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql
"""

_TABLE_EXISTS_SQL = """
SELECT EXISTS (
    SELECT FROM information_schema.tables
    WHERE table_schema = current_schema()
    AND table_name = %s
)
"""

_TABLE_COLUMNS_SQL = """
SELECT column_name FROM information_schema.columns
WHERE table_schema = current_schema()
AND table_name = %s
ORDER BY ordinal_position
"""


def get_client_ip(headers: Optional[Mapping[str, Any]]) -> str:
    """
    Client IP from proxy headers, in priority order.

    Checks `X-Real-IP`, then the first hop of `X-Forwarded-For`, then
    `REMOTE_ADDR`. Header names are matched case-insensitively, dashes and
    underscores are equivalent, and a CGI-style `HTTP_` prefix is ignored.
    Returns "unknown" when none is present.
    """
    if not headers:
        return UNKNOWN_IP
    normalized = {}
    for key, value in headers.items():
        name = str(key).lower().replace("_", "-")
        normalized[name[5:] if name.startswith("http-") else name] = value
    for key in ("x-real-ip", "x-forwarded-for", "remote-addr"):
        value = normalized.get(key)
        if value is None:
            continue
        first_hop = str(value).split(",")[0].strip()
        if first_hop:
            return first_hop
    return UNKNOWN_IP


def _adapt(value: Any) -> Any:
    """Convert a response value to something psycopg can bind."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list, tuple)):
        return Jsonb(list(value) if isinstance(value, tuple) else value)
    return value


class DatabaseOperations:
    """
    Per-session facade over the shared connection pool.

    Parameters
    ----------
    pool : PoolProvider
        Shared pool handle owned by the application entry point.
    session_id : str
        Token of the session, stamped on every inserted row.
    logger : SurveyLogger
        Session logger; all facade messages use zone DATABASE.
    request_headers : Mapping | None
        Headers of the session's HTTP request, used for the client IP.
    statement_timeout_ms : int | None
        Per-transaction statement timeout; defaults to the pool's setting.
    """

    zone = "DATABASE"

    def __init__(
        self,
        pool: PoolProvider,
        session_id: str,
        logger: "SurveyLogger",
        request_headers: Optional[Mapping[str, Any]] = None,
        statement_timeout_ms: Optional[int] = None,
    ) -> None:
        if pool is None:
            logger.log_message("Database pool cannot be None", "ERROR", self.zone)
            raise ValueError("Database pool is required")
        self._pool = pool
        self.session_id = session_id
        self.logger = logger
        self.request_headers = dict(request_headers or {})
        if statement_timeout_ms is None:
            statement_timeout_ms = getattr(pool, "statement_timeout_ms", None)
        self._statement_timeout_ms = statement_timeout_ms

    # -- transaction discipline ------------------------------------------------

    def operate(self, operation: Callable[[Connection], T], error_message: str) -> T:
        """
        Run `operation(conn)` inside one transaction.

        Raises
        ------
        DatabaseOperationError
            Wrapping whatever the operation (or the checkout) raised, after
            rollback and logging.
        """
        try:
            with self._pool.connection() as conn:
                try:
                    with conn.cursor() as cur:
                        apply_statement_timeout(cur, self._statement_timeout_ms)
                    result = operation(conn)
                    conn.commit()
                    return result
                except Exception:
                    self._rollback(conn)
                    raise
        except Exception as exc:
            self.logger.log_message(f"{error_message}: {exc}", "ERROR", self.zone)
            raise DatabaseOperationError(error_message, exc) from exc

    def _rollback(self, conn: Connection) -> None:
        try:
            conn.rollback()
            self.logger.log_message("Transaction rolled back", "WARN", self.zone)
        except Exception as rollback_error:  # noqa: BLE001 - original error is re-raised by caller
            self.logger.log_message(f"Rollback error: {rollback_error}", "ERROR", self.zone)

    def _fail(self, message: str) -> None:
        self.logger.log_message(message, "ERROR", self.zone)
        raise ValueError(message)

    # -- catalog helpers (run inside an open transaction) ----------------------

    @staticmethod
    def _table_exists(conn: Connection, table: str) -> bool:
        with conn.cursor() as cur:
            cur.execute(_TABLE_EXISTS_SQL, (table,))
            row = cur.fetchone()
        return bool(row and row[0])

    @staticmethod
    def _table_columns(conn: Connection, table: str) -> List[str]:
        with conn.cursor() as cur:
            cur.execute(_TABLE_COLUMNS_SQL, (table,))
            return [row[0] for row in cur.fetchall()]

    def _execute_ddl(self, conn: Connection, statement: str, message: str) -> None:
        with conn.cursor() as cur:
            cur.execute(statement)
        self.logger.log_entry(zone=self.zone, message=message, sql_statement=statement.strip())

    def _create_touch_trigger(self, conn: Connection, table: str) -> None:
        trigger = quote_identifier(f"{table}_date_updated"[:63])
        with conn.cursor() as cur:
            cur.execute(_TOUCH_FUNCTION_SQL)
            cur.execute(f"DROP TRIGGER IF EXISTS {trigger} ON {quote_identifier(table)}")
            cur.execute(
                f"CREATE TRIGGER {trigger} BEFORE UPDATE ON {quote_identifier(table)} "
                f"FOR EACH ROW EXECUTE FUNCTION {TOUCH_FUNCTION}()"
            )

    def _ensure_tracking_columns(self, conn: Connection, table: str) -> List[str]:
        existing = set(self._table_columns(conn, table))
        added: List[str] = []
        for name, ddl in TRACKING_COLUMNS.items():
            if name in existing:
                continue
            self._execute_ddl(
                conn,
                f"ALTER TABLE {quote_identifier(table)} ADD COLUMN IF NOT EXISTS {quote_identifier(name)} {ddl}",
                f"Added column '{name}' to table '{table}'",
            )
            if name in ("date_created", "date_updated"):
                with conn.cursor() as cur:
                    cur.execute(
                        f"UPDATE {quote_identifier(table)} SET {quote_identifier(name)} = NOW() "
                        f"WHERE {quote_identifier(name)} IS NULL"
                    )
            added.append(name)
        if "date_updated" in added:
            self._create_touch_trigger(conn, table)
        return added

    def _columns_of(self, row: Mapping[str, Any]) -> Dict[str, Tuple[str, Any]]:
        """Map sanitized column name -> (original field name, value)."""
        columns: Dict[str, Tuple[str, Any]] = {}
        for original, value in row.items():
            column = sanitize_identifier(original)
            if column in columns and columns[column][0] != original:
                self.logger.log_message(
                    f"Fields '{columns[column][0]}' and '{original}' both map to column "
                    f"'{column}'; keeping '{original}'",
                    "WARN",
                    self.zone,
                )
            columns[column] = (original, value)
        return columns

    # -- public operations -----------------------------------------------------

    def table_exists(self, table_name: str) -> bool:
        table = sanitize_identifier(table_name)
        return self.operate(
            lambda conn: self._table_exists(conn, table),
            f"Failed to check table '{table}'",
        )

    def table_columns(self, table_name: str) -> List[str]:
        table = sanitize_identifier(table_name)
        return self.operate(
            lambda conn: self._table_columns(conn, table),
            f"Failed to list columns of '{table}'",
        )

    def ensure_tracking_columns(self, table_name: str) -> List[str]:
        """Add any missing system columns to an existing table; returns the added names."""
        table = sanitize_identifier(table_name)
        return self.operate(
            lambda conn: self._ensure_tracking_columns(conn, table),
            f"Failed to ensure tracking columns for table '{table}'",
        )

    def create_table_if_absent(
        self,
        table_name: str,
        sample_row: Mapping[str, Any],
        survey_definition: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Create the response table from the shape of `sample_row` if it is missing.

        The table gets a surrogate `id SERIAL PRIMARY KEY`, one column per
        field with its inferred type, the system columns, and a trigger that
        maintains `date_updated`. On an existing table only missing system
        columns are back-filled, so repeated calls are no-ops.

        Returns
        -------
        str
            The sanitized table name.
        """
        if not sample_row:
            self._fail("Invalid data: must be a non-empty mapping")
        table = sanitize_identifier(table_name)
        columns = self._columns_of(sample_row)

        def _create(conn: Connection) -> bool:
            if self._table_exists(conn, table):
                self._ensure_tracking_columns(conn, table)
                return False
            definitions = [
                f"{quote_identifier(column)} "
                f"{column_type_for(original, [value], survey_definition).ddl}"
                for column, (original, value) in columns.items()
                if column not in SYSTEM_COLUMNS
            ]
            definitions += [
                f"{quote_identifier(name)} {ddl}" for name, ddl in TRACKING_COLUMNS.items()
            ]
            statement = (
                f"CREATE TABLE {quote_identifier(table)} "
                f"(id SERIAL PRIMARY KEY, {', '.join(definitions)})"
            )
            self._execute_ddl(conn, statement, f"Created survey table '{table}'")
            self._create_touch_trigger(conn, table)
            return True

        self.operate(_create, f"Failed to create table '{table}'")
        return table

    def append_row(
        self,
        table_name: str,
        row: Mapping[str, Any],
        survey_definition: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Insert one response, adding columns for fields the table lacks.

        `session_id` and `ip_address` are filled in from the session unless
        the row carries them.

        Returns
        -------
        int
            The id of the inserted row.
        """
        if not row:
            self._fail("Invalid data: must be a non-empty mapping")
        table = sanitize_identifier(table_name)
        data = dict(row)
        data.setdefault("session_id", self.session_id)
        data.setdefault("ip_address", self.get_client_ip())
        columns = self._columns_of(data)

        def _append(conn: Connection) -> int:
            if not self._table_exists(conn, table):
                raise LookupError(f"Table '{table}' does not exist")
            self._ensure_tracking_columns(conn, table)
            existing = set(self._table_columns(conn, table))
            for column, (original, value) in columns.items():
                if column in existing:
                    continue
                col_type = column_type_for(original, [value], survey_definition)
                self._execute_ddl(
                    conn,
                    f"ALTER TABLE {quote_identifier(table)} ADD COLUMN IF NOT EXISTS "
                    f"{quote_identifier(column)} {col_type.ddl}",
                    f"Added column '{column}' to '{table}'",
                )

            names = list(columns)
            statement = (
                f"INSERT INTO {quote_identifier(table)} "
                f"({', '.join(quote_identifier(n) for n in names)}) "
                f"VALUES ({', '.join(['%s'] * len(names))}) RETURNING id"
            )
            with conn.cursor() as cur:
                cur.execute(statement, [_adapt(columns[n][1]) for n in names])
                new_id = cur.fetchone()[0]
            self.logger.log_message(f"Inserted 1 row into '{table}'", "INFO", self.zone)
            return new_id

        return self.operate(_append, f"Failed to update table '{table}'")

    def read_filtered(
        self,
        table_name: str,
        columns: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[Union[str, Sequence[str]]] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> QueryResult:
        """
        Parameterized SELECT with optional projection, equality filters,
        ordering and limit. A None filter value matches NULL.
        """
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 0):
            self._fail("limit must be a non-negative integer")
        table = sanitize_identifier(table_name)

        select = ", ".join(safe_identifier(c) for c in columns) if columns else "*"
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (filters or {}).items():
            if value is None:
                clauses.append(f"{safe_identifier(column)} IS NULL")
            else:
                clauses.append(f"{safe_identifier(column)} = %s")
                params.append(_adapt(value))

        statement = f"SELECT {select} FROM {quote_identifier(table)}"
        if clauses:
            statement += " WHERE " + " AND ".join(clauses)
        if order_by:
            order_cols = [order_by] if isinstance(order_by, str) else list(order_by)
            direction = "DESC" if desc else "ASC"
            statement += " ORDER BY " + ", ".join(
                f"{safe_identifier(c)} {direction}" for c in order_cols
            )
        if limit is not None:
            statement += " LIMIT %s"
            params.append(limit)

        def _read(conn: Connection) -> QueryResult:
            if not self._table_exists(conn, table):
                raise LookupError(f"Table '{table}' does not exist")
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(statement, params)
                names = [d.name for d in cur.description] if cur.description else []
                rows = [dict(r) for r in cur.fetchall()]
            self.logger.log_message(f"Read {len(rows)} rows from '{table}'", "INFO", self.zone)
            return QueryResult(columns=names, rows=rows)

        return self.operate(_read, f"Failed to read from table '{table}'")

    def latest_row_for_session(self, table_name: str) -> Optional[Dict[str, Any]]:
        """Most recently inserted row of this session, or None."""
        result = self.read_filtered(
            table_name,
            filters={"session_id": self.session_id},
            order_by="id",
            desc=True,
            limit=1,
        )
        return result.rows[0] if result.rows else None

    def update_by_id(self, table_name: str, row_id: int, values: Mapping[str, Any]) -> int:
        """
        Update columns of the row with surrogate key `row_id`.

        Returns
        -------
        int
            Rows affected; 0 is logged as a warning, not raised.
        """
        if isinstance(row_id, bool) or not isinstance(row_id, int):
            self._fail("Invalid id parameter")
        if not values:
            self._fail("Invalid values parameter")
        table = sanitize_identifier(table_name)

        assignments = ", ".join(f"{safe_identifier(c)} = %s" for c in values)
        statement = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE id = %s"
        params = [_adapt(v) for v in values.values()] + [row_id]

        def _update(conn: Connection) -> int:
            with conn.cursor() as cur:
                cur.execute(statement, params)
                affected = cur.rowcount
            if affected == 0:
                self.logger.log_message(
                    f"No rows updated for id {row_id} in table '{table}'", "WARN", self.zone
                )
            else:
                self.logger.log_message(
                    f"Updated {affected} rows in table '{table}' for id {row_id}: "
                    f"{', '.join(values)}",
                    "INFO",
                    self.zone,
                )
            return affected

        return self.operate(_update, f"Failed to update table '{table}' for id {row_id}")

    def get_client_ip(self, headers: Optional[Mapping[str, Any]] = None) -> str:
        """Client IP of this session's request (see module-level `get_client_ip`)."""
        return get_client_ip(headers if headers is not None else self.request_headers)


__all__ = [
    "DatabaseOperations",
    "TRACKING_COLUMNS",
    "SYSTEM_COLUMNS",
    "UNKNOWN_IP",
    "get_client_ip",
]
