"""
Dynamic field configuration.

Turns a declarative list of field config entries into a validation verdict for
the URL parameters of a session and a choice payload for the client widget:

1. cache every referenced table once (`read_and_cache`)
2. validate the entries (`validate_config`)
3. validate URL parameters against the cache (`validate_url_parameters`)
4. resolve choice lists, 5. parent/child cascades and 6. uniqueness sets
7. package the result (`DynamicFieldConfigurator.prepare`)

Validation problems are collected, never raised. Each field is resolved in
isolation: a failure is logged with zone SURVEY and does not affect the
other fields.

Example config::

    [
        {"group_type": "param", "group_col": "source",
         "table_name": "config_source", "display_col": "display_text"},
        {"group_type": "choice", "group_col": "state", "table_name": "states",
         "choices_col": "name", "id_col": "state_id"},
        {"group_type": "choice", "group_col": "city", "table_name": "cities",
         "choices_col": "name", "parent_field": "state",
         "parent_id_col": "state_id"},
        {"group_type": "unique", "group_col": "package_name",
         "result": "warn", "result_field": "duplicate_notice"},
    ]
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from surveybridge.domain.models import (
    ConfiguratorResult,
    FieldConfig,
    GroupType,
    QueryResult,
    UniqueCheck,
    UniqueResult,
    ValidationResult,
)
from surveybridge.domain.schema import sanitize_identifier
from surveybridge.errors import ConfigurationError, DatabaseOperationError
from surveybridge.utils.query import QueryValue, first_value

if TYPE_CHECKING:
    from surveybridge.infrastructure.db_operations import DatabaseOperations
    from surveybridge.survey_logger import SurveyLogger

ZONE = "SURVEY"

ConfigEntry = Union[Mapping[str, Any], FieldConfig]
Tables = Dict[str, QueryResult]

_WHITESPACE = re.compile(r"\s+")
_SPECIAL = re.compile(r"[^a-z0-9\s]")


def _log(logger: Optional["SurveyLogger"], message: str, type: str = "INFO") -> None:
    if logger is not None:
        logger.log_message(message, type, ZONE)


def _same(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is right
    return left == right or str(left) == str(right)


def _as_field_config(entry: ConfigEntry) -> FieldConfig:
    if isinstance(entry, FieldConfig):
        return entry
    return FieldConfig.model_validate(dict(entry))


def _source_table(config: FieldConfig, write_table: Optional[str]) -> Optional[str]:
    if config.group_type is GroupType.UNIQUE:
        return config.table_name or write_table
    return config.table_name


def normalize_value(value: Any, remove_special: bool = True) -> Any:
    """
    Comparison form of a value: lowercase, trimmed, whitespace collapsed and,
    with `remove_special`, stripped of characters other than [a-z0-9] and
    whitespace. Non-strings and empty strings are returned unchanged.
    """
    if not value or not isinstance(value, str):
        return value
    normalized = _WHITESPACE.sub(" ", value.lower().strip())
    if remove_special:
        normalized = _SPECIAL.sub("", normalized)
    return normalized


# -- 1. caching --------------------------------------------------------------


def read_and_cache(
    db: "DatabaseOperations",
    configs: Sequence[ConfigEntry],
    write_table: Optional[str] = None,
) -> Tuple[Tables, List[str]]:
    """
    Read every distinct table referenced by `configs` once.

    The write table is included whenever a `unique` entry or an
    `exclude_existing` choice needs it. Tables that do not exist (or cannot
    be read) are recorded as warnings and cached as empty results.

    Returns
    -------
    (tables, warnings)
    """
    names: List[str] = []
    for entry in configs:
        data = entry.model_dump(mode="json") if isinstance(entry, FieldConfig) else entry
        if not isinstance(data, Mapping):
            continue
        table = data.get("table_name")
        if data.get("group_type") == GroupType.UNIQUE.value and not table:
            table = write_table
        if table and table not in names:
            names.append(table)
        if data.get("exclude_existing") and write_table and write_table not in names:
            names.append(write_table)

    tables: Tables = {}
    warnings: List[str] = []
    for name in names:
        try:
            if not db.table_exists(name):
                warnings.append(f"Table '{name}' not found")
                tables[name] = QueryResult()
                continue
            tables[name] = db.read_filtered(name)
        except (DatabaseOperationError, ConfigurationError, ValueError) as exc:
            warnings.append(f"Failed to read table '{name}': {exc}")
            tables[name] = QueryResult()
    for message in warnings:
        db.logger.log_message(message, "WARN", ZONE)
    return tables, warnings


# -- 2. config validation ----------------------------------------------------


def _parent_chain_has_cycle(field: str, parents: Mapping[str, str]) -> bool:
    seen = {field}
    current = parents.get(field)
    while current is not None:
        if current in seen:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


def validate_config(
    configs: Any,
    tables: Optional[Tables] = None,
    logger: Optional["SurveyLogger"] = None,
    write_table: Optional[str] = None,
) -> ValidationResult:
    """
    Check the structure of every entry and, when `tables` is given, that the
    referenced columns exist. All problems are collected.
    """
    result = ValidationResult()
    _log(logger, "Started dynamic field configuration validation")

    if isinstance(configs, (str, bytes, Mapping)) or not isinstance(configs, Sequence):
        message = "dynamic_config must be a list"
        result.errors.append(message)
        _log(logger, message, "ERROR")
        return result

    def error(message: str) -> None:
        result.errors.append(message)
        _log(logger, message, "ERROR")

    fields: Dict[str, str] = {}
    parents: Dict[str, str] = {}
    children: Dict[str, List[str]] = {}

    for index, entry in enumerate(configs, start=1):
        prefix = f"Configuration entry {index}: "
        if isinstance(entry, FieldConfig):
            entry = entry.model_dump(mode="json", exclude_none=True)
        if not isinstance(entry, Mapping):
            error(prefix + "must be a mapping")
            continue

        group_type = entry.get("group_type")
        group_col = entry.get("group_col")
        missing = [key for key in ("group_type", "group_col") if not entry.get(key)]
        if missing:
            error(prefix + f"missing required fields: {', '.join(missing)}")
        if group_type and group_type not in [t.value for t in GroupType]:
            error(prefix + "group_type must be one of 'choice', 'param' or 'unique'")
            continue

        if group_type in (GroupType.CHOICE.value, GroupType.PARAM.value) and not entry.get("table_name"):
            error(prefix + f"table_name is required for group_type='{group_type}'")
        if group_type == GroupType.PARAM.value and not entry.get("display_col"):
            error(prefix + "display_col is required for group_type='param'")
        if group_type == GroupType.UNIQUE.value:
            policy = entry.get("result")
            if policy not in [r.value for r in UniqueResult]:
                error(prefix + "result must be either 'warn' or 'stop' for group_type='unique'")
            elif policy == UniqueResult.WARN.value and not entry.get("result_field"):
                error(prefix + "result_field is required when result='warn'")

        if group_col and group_type in (GroupType.CHOICE.value, GroupType.PARAM.value):
            if group_col in fields:
                error(prefix + f"field '{group_col}' is configured more than once")
            fields[group_col] = group_type

        parent_field = entry.get("parent_field")
        if parent_field:
            if group_type != GroupType.CHOICE.value:
                error(prefix + "only choice entries can declare a parent_field")
            elif parent_field == group_col:
                error(prefix + "a field cannot be its own parent")
            elif not entry.get("parent_id_col"):
                error(prefix + "parent_id_col is required when parent_field is set")
            else:
                parents[group_col] = parent_field
                children.setdefault(parent_field, []).append(group_col)

        if tables is not None and group_type:
            table_name = entry.get("table_name")
            if group_type == GroupType.UNIQUE.value and not table_name:
                table_name = write_table
            if table_name:
                if table_name not in tables:
                    error(prefix + f"table '{table_name}' not found in cache")
                elif tables[table_name].columns and table_name != write_table:
                    # an empty column list means the table is missing (already warned)
                    table = tables[table_name]
                    if group_type == GroupType.UNIQUE.value:
                        wanted = [group_col]
                    else:
                        value_col = entry.get("choices_col") if group_type == GroupType.CHOICE.value else None
                        wanted = [value_col or group_col] + [
                            entry.get(k) for k in ("display_col", "filter_col", "id_col", "parent_id_col")
                        ]
                    missing_cols = [c for c in wanted if c and not table.has_column(c)]
                    if missing_cols:
                        error(prefix + f"columns not found in table: {', '.join(missing_cols)}")

    for child, parent in parents.items():
        if parent not in fields:
            error(f"Field '{child}': parent field '{parent}' is not configured")
        elif _parent_chain_has_cycle(child, parents):
            error(f"Field '{child}': parent chain forms a cycle")
    for parent, kids in children.items():
        if len(kids) > 1:
            error(f"Field '{parent}' has more than one child field: {', '.join(kids)}")

    if result.valid:
        _log(logger, "Validated dynamic field configuration")
    else:
        _log(
            logger,
            f"Dynamic field configuration validation failed with {len(result.errors)} errors",
            "ERROR",
        )
    return result


# -- 3. URL parameters -------------------------------------------------------


def validate_url_parameters(
    configs: Sequence[ConfigEntry],
    tables: Tables,
    query: Mapping[str, QueryValue],
    logger: Optional["SurveyLogger"] = None,
) -> ValidationResult:
    """
    Every `param` entry's key must be in `query` with a value found in the
    entry's table column. Repeated keys are checked by their first value.
    """
    result = ValidationResult()
    _log(logger, "Starting URL parameter validation")

    for config in (_as_field_config(c) for c in configs):
        if config.group_type is not GroupType.PARAM:
            continue
        name, table_name = config.group_col, config.table_name
        _log(logger, f"Checking parameter '{name}' in table '{table_name}'")

        value = first_value(query.get(name))
        if value is None or value == "":
            message = f"Required parameter '{name}' not found in URL"
            result.errors.append(message)
            _log(logger, message, "ERROR")
            continue

        table = tables.get(table_name) if table_name else None
        if table is None:
            message = f"Cache missing for table '{table_name}'"
            result.errors.append(message)
            _log(logger, message, "ERROR")
            continue

        known = table.column(name) if table.has_column(name) else []
        if not any(_same(candidate, value) for candidate in known):
            message = (
                f"Invalid value '{value}' for parameter '{name}'. "
                f"Not found in table '{table_name}'"
            )
            result.errors.append(message)
            _log(logger, message, "ERROR")
            continue

        result.values[name] = value
        _log(logger, f"Validated parameter '{name}' with value '{value}'")

    if not result.valid:
        _log(logger, f"URL parameter validation failed with {len(result.errors)} errors", "ERROR")
    return result


def transform_validated_params(
    values: Mapping[str, Any],
    configs: Sequence[ConfigEntry],
    tables: Tables,
) -> Dict[str, Dict[str, Any]]:
    """
    `{name: value}` -> `{name: {"text": display, "value": value}}`.

    The display text comes from the entry's `display_col` in the first
    matching row; it falls back to the value itself.
    """
    by_name = {
        c.group_col: c
        for c in (_as_field_config(entry) for entry in configs)
        if c.group_type is GroupType.PARAM
    }
    transformed: Dict[str, Dict[str, Any]] = {}
    for name, raw in values.items():
        value = raw.get("value") if isinstance(raw, Mapping) else raw
        text = value
        config = by_name.get(name)
        table = tables.get(config.table_name) if config and config.table_name else None
        if config and table is not None and config.display_col and table.has_column(config.display_col):
            matches = table.where(name, value) if table.has_column(name) else QueryResult()
            for row in matches:
                if row.get(config.display_col) is not None:
                    text = row[config.display_col]
                    break
        transformed[name] = {"text": text, "value": value}
    return transformed


# -- 4-6. resolution ---------------------------------------------------------


def _existing_values(tables: Tables, write_table: Optional[str], field: str) -> List[Any]:
    """Values already stored for `field` in the write table (empty when unknown)."""
    table = tables.get(write_table) if write_table else None
    if table is None:
        return []
    if table.has_column(field):
        return table.distinct(field)
    try:
        column = sanitize_identifier(field)
    except ConfigurationError:
        return []
    return table.distinct(column) if table.has_column(column) else []


def _choice_rows(config: FieldConfig, tables: Tables) -> List[Dict[str, Any]]:
    if not config.table_name or config.table_name not in tables:
        raise LookupError(f"table '{config.table_name}' not cached")
    table = tables[config.table_name]
    if config.filter_col:
        table = table.where(config.filter_col, config.filter_val)
    if table.rows and not table.has_column(config.value_col):
        raise KeyError(f"column '{config.value_col}' not found in table '{config.table_name}'")
    return [row for row in table if row.get(config.value_col) is not None]


def _text_for(config: FieldConfig, row: Mapping[str, Any]) -> Any:
    if config.display_col and row.get(config.display_col) is not None:
        return row[config.display_col]
    return row[config.value_col]


def resolve_choices(
    config: ConfigEntry,
    tables: Tables,
    write_table: Optional[str] = None,
) -> Dict[str, List[Any]]:
    """
    Distinct non-null values of the entry's value column with their display
    text, after the optional equality filter and, with `exclude_existing`,
    without values already stored in the write table.
    """
    config = _as_field_config(config)
    excluded = _existing_values(tables, write_table, config.group_col) if config.exclude_existing else []
    values: List[Any] = []
    texts: List[Any] = []
    for row in _choice_rows(config, tables):
        value = row[config.value_col]
        if any(_same(value, seen) for seen in values):
            continue
        if any(_same(value, stored) for stored in excluded):
            continue
        values.append(value)
        texts.append(_text_for(config, row))
    return {"value": values, "text": texts}


def _parent_ids(config: FieldConfig, tables: Tables, choices: Mapping[str, List[Any]]) -> List[Any]:
    """Linkage id of each resolved parent value (the value itself without id_col)."""
    if not config.id_col:
        return list(choices["value"])
    rows = _choice_rows(config, tables)
    ids: List[Any] = []
    for value in choices["value"]:
        match = next((row for row in rows if _same(row[config.value_col], value)), None)
        ids.append(match.get(config.id_col) if match else None)
    return ids


def _child_choices(
    config: FieldConfig,
    tables: Tables,
    parent_choices: Mapping[str, List[Any]],
    write_table: Optional[str],
) -> Dict[str, List[Any]]:
    """Full candidate set of a child field, each tagged with its parent linkage."""
    excluded = _existing_values(tables, write_table, config.group_col) if config.exclude_existing else []
    parent_values = list(parent_choices.get("value", []))
    parent_ids = list(parent_choices.get("ids", parent_values))
    choices: Dict[str, List[Any]] = {"value": [], "text": [], "parentId": [], "parentValue": []}
    seen: List[Tuple[Any, Any]] = []
    for row in _choice_rows(config, tables):
        value = row[config.value_col]
        parent_id = row.get(config.parent_id_col) if config.parent_id_col else None
        if any(_same(value, v) and _same(parent_id, p) for v, p in seen):
            continue
        if any(_same(value, stored) for stored in excluded):
            continue
        seen.append((value, parent_id))
        parent_value = next(
            (pv for pv, pid in zip(parent_values, parent_ids) if _same(pid, parent_id)),
            None,
        )
        choices["value"].append(value)
        choices["text"].append(_text_for(config, row))
        choices["parentId"].append(parent_id)
        choices["parentValue"].append(parent_value)
    return choices


def resolve_unique(
    config: ConfigEntry,
    tables: Tables,
    write_table: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Existing values of a `unique` column with their normalized forms, for
    duplicate checks without a round trip per keystroke.
    """
    config = _as_field_config(config)
    table_name = config.table_name or write_table
    if table_name is None:
        raise LookupError("no table for uniqueness check")
    if config.table_name:
        table = tables.get(table_name, QueryResult())
        values = table.distinct(config.group_col) if table.has_column(config.group_col) else []
    else:
        values = _existing_values(tables, write_table, config.group_col)
    return {
        "result": config.result.value if config.result else UniqueResult.WARN.value,
        "result_field": config.result_field,
        "normalization_settings": {"removeSpecial": config.remove_special},
        "values": values,
        "normalized_values": [
            {"original": value, "normalized": normalize_value(value, config.remove_special)}
            for value in values
        ],
    }


def build_payload(
    configs: Sequence[ConfigEntry],
    tables: Tables,
    write_table: Optional[str] = None,
    logger: Optional["SurveyLogger"] = None,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Resolve every field into the client payload.

    Returns
    -------
    (payload, errors)
        Fields that failed are absent from the payload and described in
        `errors`; children of a failed parent fail too.
    """
    parsed = [_as_field_config(c) for c in configs]
    fields = {
        c.group_col: c for c in parsed if c.group_type in (GroupType.CHOICE, GroupType.PARAM)
    }
    child_of = {c.parent_field: c.group_col for c in fields.values() if c.parent_field}

    payload: Dict[str, Any] = {}
    errors: List[str] = []
    resolved: Dict[str, Optional[Dict[str, Any]]] = {}

    def field_type(config: FieldConfig) -> Optional[str]:
        is_parent = config.group_col in child_of
        if config.parent_field:
            return "parent" if is_parent else "child"
        if is_parent:
            return "param_parent" if config.group_type is GroupType.PARAM else "choice_parent"
        return "standalone" if config.group_type is GroupType.CHOICE else None

    def resolve(name: str) -> Optional[Dict[str, Any]]:
        if name in resolved:
            return resolved[name]
        resolved[name] = None
        config = fields[name]
        kind = field_type(config)
        if kind is None:
            return None
        try:
            if config.parent_field:
                parent = resolve(config.parent_field)
                if parent is None:
                    raise LookupError(f"parent field '{config.parent_field}' was not resolved")
                choices = _child_choices(config, tables, parent["choices"], write_table)
            else:
                choices = resolve_choices(config, tables, write_table)
            if config.group_col in child_of:
                choices["ids"] = _parent_ids(config, tables, choices)
        except (LookupError, ValueError, TypeError) as exc:
            message = f"Field '{name}': {exc}"
            errors.append(message)
            _log(logger, message, "ERROR")
            return None

        entry: Dict[str, Any] = {"type": kind, "choices": choices}
        if config.group_col in child_of:
            entry["childField"] = child_of[config.group_col]
        if config.parent_field:
            entry["parentField"] = config.parent_field
        resolved[name] = entry
        _log(logger, f"Resolved {len(choices['value'])} choices for field '{name}' ({kind})")
        return entry

    for name in fields:
        entry = resolve(name)
        if entry is not None:
            payload[name] = entry

    unique_sets: Dict[str, Any] = {}
    for config in parsed:
        if config.group_type is not GroupType.UNIQUE:
            continue
        try:
            unique_sets[config.group_col] = resolve_unique(config, tables, write_table)
        except (LookupError, ValueError, TypeError) as exc:
            message = f"Field '{config.group_col}': {exc}"
            errors.append(message)
            _log(logger, message, "ERROR")
            continue
        _log(
            logger,
            f"Loaded {len(unique_sets[config.group_col]['values'])} existing values "
            f"for unique field '{config.group_col}'",
        )
    if unique_sets:
        payload["unique_validation"] = unique_sets
    return payload, errors


# -- submission-time helpers -------------------------------------------------


def cascade_child_choices(
    parent_payload: Mapping[str, Any],
    child_payload: Mapping[str, Any],
    parent_value: Any,
    current_value: Any = None,
) -> Tuple[List[Dict[str, Any]], Any]:
    """
    Child choices that belong to `parent_value`, and the child's value after
    the change (None when it is no longer a valid choice).

    Without a parent value nothing is filtered: the result is an empty list
    and the current value unchanged.
    """
    if parent_value is None or parent_value == "":
        return [], current_value

    parent_choices = parent_payload.get("choices", {})
    values = list(parent_choices.get("value", []))
    ids = list(parent_choices.get("ids", values))
    parent_id = next((pid for v, pid in zip(values, ids) if _same(v, parent_value)), None)

    choices: List[Dict[str, Any]] = []
    if parent_id is not None:
        child = child_payload.get("choices", {})
        for value, text, link in zip(child.get("value", []), child.get("text", []), child.get("parentId", [])):
            if _same(link, parent_id):
                choices.append({"value": value, "text": text})

    if current_value is not None and not any(_same(c["value"], current_value) for c in choices):
        current_value = None
    return choices, current_value


def _unique_key(value: Any, remove_special: bool) -> Any:
    # stored and submitted values compare as normalized text whatever their type
    if value is None:
        return None
    return normalize_value(value if isinstance(value, str) else str(value), remove_special)


def check_unique(value: Any, unique_payload: Mapping[str, Any], field: str = "") -> UniqueCheck:
    """Whether `value` duplicates a stored value, and whether that blocks submission."""
    if value is None or value == "":
        return UniqueCheck(field=field, duplicate=False, blocked=False)
    remove_special = bool(unique_payload.get("normalization_settings", {}).get("removeSpecial", True))
    normalized = _unique_key(value, remove_special)
    duplicate = any(
        _unique_key(item.get("normalized"), remove_special) == normalized
        for item in unique_payload.get("normalized_values", [])
    )
    blocked = duplicate and unique_payload.get("result") == UniqueResult.STOP.value
    return UniqueCheck(field=field, duplicate=duplicate, blocked=blocked)


# -- 7. orchestration --------------------------------------------------------


class DynamicFieldConfigurator:
    """
    Runs the full configuration pass for one session and keeps its cache.

    Example:
        configurator = DynamicFieldConfigurator(db, config, "responses", logger)
        result = configurator.prepare(parse_query(url))
        if result.valid and result.payload:
            channel.send_message("updateDynamicChoices", result.payload)
    """

    def __init__(
        self,
        db: "DatabaseOperations",
        configs: Sequence[ConfigEntry],
        write_table: Optional[str],
        logger: Optional["SurveyLogger"] = None,
    ) -> None:
        self.db = db
        self.configs = list(configs)
        self.write_table = write_table
        self.logger = logger if logger is not None else getattr(db, "logger", None)
        self.tables: Tables = {}
        self.field_configs: List[FieldConfig] = []
        self.payload: Optional[Dict[str, Any]] = None

    def prepare(self, query: Optional[Mapping[str, QueryValue]] = None) -> ConfiguratorResult:
        result = ConfiguratorResult()

        self.tables, warnings = read_and_cache(self.db, self.configs, self.write_table)
        result.warnings.extend(warnings)

        validation = validate_config(self.configs, self.tables, self.logger, self.write_table)
        if not validation.valid:
            result.errors.extend(validation.errors)
            return result
        try:
            self.field_configs = [_as_field_config(c) for c in self.configs]
        except ValidationError as exc:
            message = f"Invalid dynamic field configuration: {exc}"
            result.errors.append(message)
            _log(self.logger, message, "ERROR")
            return result

        params = validate_url_parameters(self.field_configs, self.tables, query or {}, self.logger)
        if not params.valid:
            result.errors.extend(params.errors)
            return result
        result.params = transform_validated_params(params.values, self.field_configs, self.tables)

        payload, field_errors = build_payload(
            self.field_configs, self.tables, self.write_table, self.logger
        )
        result.warnings.extend(field_errors)
        if payload:
            result.payload = payload
        else:
            _log(self.logger, "No dynamic fields resolved", "WARN")
        self.payload = result.payload
        return result

    def unique_sets(self) -> Dict[str, Any]:
        return dict((self.payload or {}).get("unique_validation", {}))

    def cascades(self) -> List[Tuple[str, str]]:
        """(parent, child) field pairs of the resolved payload, parents first."""
        payload = self.payload or {}
        pairs = [
            (name, entry["childField"])
            for name, entry in payload.items()
            if name != "unique_validation" and entry.get("childField") in payload
        ]
        ordered: List[Tuple[str, str]] = []
        remaining = list(pairs)
        while remaining:
            children = {child for _, child in remaining}
            roots = [p for p in remaining if p[0] not in children] or remaining[:1]
            for pair in roots:
                ordered.append(pair)
                remaining.remove(pair)
        return ordered

    def clear(self) -> None:
        """Drop cached tables and the resolved payload."""
        self.tables = {}
        self.payload = None


__all__ = [
    "DynamicFieldConfigurator",
    "build_payload",
    "cascade_child_choices",
    "check_unique",
    "normalize_value",
    "read_and_cache",
    "resolve_choices",
    "resolve_unique",
    "transform_validated_params",
    "validate_config",
    "validate_url_parameters",
]
