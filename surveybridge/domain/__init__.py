"""
Domain package for surveybridge.

Exports the records, configuration entries and type-inference helpers shared
by the infrastructure layer, the configurator and the session layer. Keep this
package free of I/O.
"""

from surveybridge.domain.models import (
    LOG_COLUMNS,
    ConfiguratorResult,
    FieldConfig,
    GroupType,
    LogEntry,
    QueryResult,
    UniqueCheck,
    UniqueResult,
    ValidationResult,
)
from surveybridge.domain.schema import (
    SqlType,
    column_type_for,
    has_other_option,
    infer_sql_type,
    quote_identifier,
    safe_identifier,
    sanitize_identifier,
)

__all__ = [
    "LOG_COLUMNS",
    "ConfiguratorResult",
    "FieldConfig",
    "GroupType",
    "LogEntry",
    "QueryResult",
    "UniqueCheck",
    "UniqueResult",
    "ValidationResult",
    "SqlType",
    "column_type_for",
    "has_other_option",
    "infer_sql_type",
    "quote_identifier",
    "safe_identifier",
    "sanitize_identifier",
]
