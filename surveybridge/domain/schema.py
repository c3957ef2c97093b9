"""
Identifier sanitizing and column-type inference for survey tables.

Table and column names cannot be bound as query parameters, so every
identifier that reaches SQL is first sanitized (lowercase, non-alphanumerics
replaced with underscores) and then checked against an allow-list before it
is quoted.

Column types are inferred from the Python values of a response: the mapping
is a pure function so it can be tested without a database.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from numbers import Number
from typing import Any, Iterable, Mapping, Optional

from surveybridge.errors import ConfigurationError

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_SAFE_IDENTIFIER = re.compile(r"^[a-z0-9_]{1,63}$")


class SqlType(str, Enum):
    """Column types a response value can map to."""

    INTEGER = "INTEGER"
    NUMERIC = "NUMERIC"
    BOOLEAN = "BOOLEAN"
    TIMESTAMP = "TIMESTAMP"
    TEXT = "TEXT"
    JSON = "JSON"

    @property
    def ddl(self) -> str:
        """Type name used in CREATE/ALTER statements."""
        return "JSONB" if self is SqlType.JSON else self.value


def sanitize_identifier(name: str) -> str:
    """
    Lowercase `name` and replace every character outside [a-z0-9] with `_`.

    >>> sanitize_identifier("My Survey!")
    'my_survey_'
    """
    if name is None or str(name) == "":
        raise ConfigurationError("Identifier must be a non-empty string")
    return _NON_ALNUM.sub("_", str(name).lower())


def quote_identifier(name: str) -> str:
    """
    Double-quote an already sanitized identifier.

    Raises ValueError for anything outside the allow-list, so unsanitized
    input can never be interpolated into a statement.
    """
    if not isinstance(name, str) or not _SAFE_IDENTIFIER.match(name):
        raise ValueError(f"Unsafe SQL identifier: {name!r}")
    return f'"{name}"'


def safe_identifier(name: str) -> str:
    """Sanitize then quote."""
    return quote_identifier(sanitize_identifier(name))


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _is_integer_valued(value: Any) -> bool:
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    if isinstance(value, Decimal):
        return value == value.to_integral_value()
    return False


def infer_sql_type(values: Iterable[Any]) -> SqlType:
    """
    Infer the column type for a set of sample values.

    Nulls are ignored. The rules, in order:

    - enum members (categorical values) -> TEXT
    - all booleans -> BOOLEAN
    - all numeric and integer-valued -> INTEGER; other numeric -> NUMERIC
    - all datetime/date -> TIMESTAMP
    - lists, tuples or dicts -> JSON
    - anything else, mixed kinds, or only nulls -> TEXT
    """
    present = [v for v in values if v is not None]
    if not present:
        return SqlType.TEXT

    if any(isinstance(v, Enum) for v in present):
        return SqlType.TEXT
    if all(isinstance(v, bool) for v in present):
        return SqlType.BOOLEAN
    if all(_is_number(v) for v in present):
        if all(_is_integer_valued(v) for v in present):
            return SqlType.INTEGER
        return SqlType.NUMERIC
    if all(isinstance(v, (datetime, date)) for v in present):
        return SqlType.TIMESTAMP
    if all(isinstance(v, (list, tuple, dict)) for v in present):
        return SqlType.JSON
    return SqlType.TEXT


def _elements_have_other(elements: Any, field_name: str) -> bool:
    for element in elements or []:
        if not isinstance(element, Mapping):
            continue
        if element.get("name") == field_name and element.get("showOtherItem"):
            return True
        if _elements_have_other(element.get("elements"), field_name):
            return True
    return False


def has_other_option(survey_definition: Optional[Mapping[str, Any]], field_name: str) -> bool:
    """
    True when the question `field_name` enables a free-text "other" choice.

    Searches every page, top-level elements and nested panels.
    """
    if not survey_definition or not field_name:
        return False
    for page in survey_definition.get("pages") or []:
        if isinstance(page, Mapping) and _elements_have_other(page.get("elements"), field_name):
            return True
    return _elements_have_other(survey_definition.get("elements"), field_name)


def column_type_for(
    field_name: str,
    values: Iterable[Any],
    survey_definition: Optional[Mapping[str, Any]] = None,
) -> SqlType:
    """Column type for a field; questions with an "other" option are always TEXT."""
    if has_other_option(survey_definition, field_name):
        return SqlType.TEXT
    return infer_sql_type(values)


__all__ = [
    "SqlType",
    "sanitize_identifier",
    "quote_identifier",
    "safe_identifier",
    "infer_sql_type",
    "has_other_option",
    "column_type_for",
]
