from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

import pytest

from surveybridge.domain.schema import (
    SqlType,
    column_type_for,
    has_other_option,
    infer_sql_type,
    quote_identifier,
    safe_identifier,
    sanitize_identifier,
)
from surveybridge.errors import ConfigurationError


class Color(Enum):
    RED = "red"
    BLUE = "blue"


SURVEY_WITH_OTHER = {
    "pages": [
        {
            "name": "page1",
            "elements": [
                {"type": "text", "name": "feedback"},
                {
                    "type": "panel",
                    "name": "details",
                    "elements": [
                        {"type": "dropdown", "name": "source", "showOtherItem": True},
                    ],
                },
            ],
        }
    ]
}


class TestSanitizeIdentifier:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("My Survey!", "my_survey_"),
            ("responses", "responses"),
            ("Q1-Rating", "q1_rating"),
            ("field..option", "field__option"),
            ("ÄBC", "_bc"),
        ],
    )
    def test_lowercases_and_replaces_non_alphanumerics(self, raw: str, expected: str) -> None:
        assert sanitize_identifier(raw) == expected

    def test_is_deterministic_and_safe(self) -> None:
        name = "  Weird/Table;DROP  "
        first = sanitize_identifier(name)

        assert first == sanitize_identifier(name)
        assert set(first) <= set("abcdefghijklmnopqrstuvwxyz0123456789_")

    def test_empty_name_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            sanitize_identifier("")


class TestQuoteIdentifier:
    def test_quotes_safe_names(self) -> None:
        assert quote_identifier("my_survey_") == '"my_survey_"'

    @pytest.mark.parametrize("name", ['a"b', "Upper", "x" * 64, "", "semi;colon"])
    def test_rejects_names_outside_allow_list(self, name: str) -> None:
        with pytest.raises(ValueError):
            quote_identifier(name)

    def test_safe_identifier_sanitizes_first(self) -> None:
        assert safe_identifier("Display Text") == '"display_text"'


class TestInferSqlType:
    @pytest.mark.parametrize(
        "values,expected",
        [
            ([1, 2, 3], SqlType.INTEGER),
            ([5.0, 2], SqlType.INTEGER),
            ([Decimal("3")], SqlType.INTEGER),
            ([1.5, 2], SqlType.NUMERIC),
            ([Decimal("3.25")], SqlType.NUMERIC),
            ([True, False], SqlType.BOOLEAN),
            ([datetime(2024, 1, 1)], SqlType.TIMESTAMP),
            ([date(2024, 1, 1)], SqlType.TIMESTAMP),
            ([["a", "b"]], SqlType.JSON),
            ([{"k": 1}], SqlType.JSON),
            (["Great"], SqlType.TEXT),
            ([Color.RED], SqlType.TEXT),
            ([1, "two"], SqlType.TEXT),
            ([None, None], SqlType.TEXT),
            ([], SqlType.TEXT),
        ],
    )
    def test_inference_rules(self, values: list, expected: SqlType) -> None:
        assert infer_sql_type(values) is expected

    def test_nulls_are_ignored(self) -> None:
        assert infer_sql_type([None, 4, None]) is SqlType.INTEGER

    def test_booleans_are_not_numbers(self) -> None:
        assert infer_sql_type([True, 1]) is SqlType.TEXT

    def test_json_ddl_uses_jsonb(self) -> None:
        assert SqlType.JSON.ddl == "JSONB"
        assert SqlType.INTEGER.ddl == "INTEGER"


class TestOtherOption:
    def test_finds_nested_question_with_other_item(self) -> None:
        assert has_other_option(SURVEY_WITH_OTHER, "source")
        assert not has_other_option(SURVEY_WITH_OTHER, "feedback")
        assert not has_other_option(None, "source")

    def test_other_option_forces_text(self) -> None:
        assert column_type_for("source", [3], SURVEY_WITH_OTHER) is SqlType.TEXT
        assert column_type_for("feedback", [3], SURVEY_WITH_OTHER) is SqlType.INTEGER
