"""
Domain models for surveybridge.

Defines the audit log record, the dynamic field configuration entry, and the
small result containers passed between the operations facade, the
configurator and the session layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

LOG_COLUMNS: Tuple[str, ...] = (
    "session_id",
    "survey_name",
    "timestamp",
    "zone",
    "message",
    "type",
    "sql_statement",
    "duration_load",
    "duration_complete",
    "duration_save",
    "ip_address",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogEntry(BaseModel):
    """
    One row of the shared log table.
    """

    session_id: str = Field(..., description="Session token of the producing session.")
    survey_name: str = Field(..., description="Survey (write table) the session serves.")
    timestamp: datetime = Field(default_factory=_utcnow, description="Creation time (UTC).")
    zone: str = Field("DEFAULT", description="Free-text category, e.g. DATABASE or SURVEY.")
    message: str = Field("", description="Human-readable message.")
    type: str = Field("INFO", description="Severity: INFO, WARN or ERROR.")
    sql_statement: Optional[str] = Field(None, description="Statement involved, if any.")
    duration_load: Optional[float] = Field(None, description="Seconds to load the form.")
    duration_complete: Optional[float] = Field(None, description="Seconds to complete the form.")
    duration_save: Optional[float] = Field(None, description="Seconds to save the response.")
    ip_address: Optional[str] = Field(None, description="Client IP address.")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }

    def as_row(self) -> Tuple[Any, ...]:
        """Values in LOG_COLUMNS order."""
        return tuple(getattr(self, name) for name in LOG_COLUMNS)


class GroupType(str, Enum):
    CHOICE = "choice"
    PARAM = "param"
    UNIQUE = "unique"


class UniqueResult(str, Enum):
    WARN = "warn"
    STOP = "stop"


class FieldConfig(BaseModel):
    """
    A declarative dynamic-field entry, parsed after structural validation.

    `choice` entries populate a question's choices from a table, `param`
    entries validate a URL parameter against a table, and `unique` entries
    ship the existing values of a column so duplicates can be flagged.
    """

    group_type: GroupType
    group_col: str
    table_name: Optional[str] = None
    choices_col: Optional[str] = None
    display_col: Optional[str] = None
    filter_col: Optional[str] = None
    filter_val: Optional[Any] = None
    exclude_existing: bool = False
    id_col: Optional[str] = None
    parent_field: Optional[str] = None
    parent_id_col: Optional[str] = None
    result: Optional[UniqueResult] = None
    result_field: Optional[str] = None
    remove_special: bool = True

    model_config = {
        "frozen": True,
        "extra": "ignore",
    }

    @property
    def value_col(self) -> str:
        """Column supplying choice values (param entries use group_col)."""
        if self.group_type is GroupType.CHOICE and self.choices_col:
            return self.choices_col
        return self.group_col


@dataclass
class QueryResult:
    """
    Tabular result of a read: column names plus rows as dicts.

    An empty result keeps its column list so callers can still check which
    columns a table has.
    """

    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.rows)

    def has_column(self, name: str) -> bool:
        return name in self.columns

    def column(self, name: str) -> List[Any]:
        if name not in self.columns:
            raise KeyError(f"Column '{name}' not in result")
        return [row.get(name) for row in self.rows]

    def distinct(self, name: str) -> List[Any]:
        """Distinct non-null values of a column, in first-seen order."""
        seen: List[Any] = []
        for value in self.column(name):
            if value is not None and value not in seen:
                seen.append(value)
        return seen

    def where(self, name: str, value: Any) -> "QueryResult":
        """Rows whose column equals `value` (compared as strings)."""
        return QueryResult(
            columns=list(self.columns),
            rows=[row for row in self.rows if _same(row.get(name), value)],
        )


def _same(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    return left == right or str(left) == str(right)


@dataclass
class ValidationResult:
    """Collected outcome of a validation pass; never raised."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class UniqueCheck:
    """Outcome of checking one submitted value against a uniqueness set."""

    field: str
    duplicate: bool
    blocked: bool


@dataclass
class ConfiguratorResult:
    """Everything the configurator produced for one session."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    params: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    payload: Optional[Dict[str, Any]] = None

    @property
    def valid(self) -> bool:
        return not self.errors


def chunk_rows(rows: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    """Yield consecutive slices of at most `size` items."""
    for start in range(0, len(rows), size):
        yield rows[start : start + size]


__all__ = [
    "LOG_COLUMNS",
    "LogEntry",
    "GroupType",
    "UniqueResult",
    "FieldConfig",
    "QueryResult",
    "ValidationResult",
    "UniqueCheck",
    "ConfiguratorResult",
    "chunk_rows",
]
