"""
Exception types and user-visible failure states for surveybridge.

Configuration problems are fatal at startup and raise. Validation problems are
never raised: they are collected and reported (see `ValidationResult` in
`surveybridge.domain.models`). Database failures are raised by the operations
facade only after the transaction has been rolled back and the connection
returned to the pool.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class SurveyBridgeError(Exception):
    """Base class for all surveybridge errors."""


class ConfigurationError(SurveyBridgeError):
    """Missing or invalid startup configuration (database fields, table names)."""


class DatabaseOperationError(SurveyBridgeError):
    """
    A database operation failed and its transaction was rolled back.

    Attributes
    ----------
    operation : str
        Context string describing the failed operation.
    cause : Exception | None
        The underlying driver or validation error.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.cause = cause
        message = f"{operation}: {cause}" if cause is not None else operation
        super().__init__(message)


class MessageState(str, Enum):
    """Named UI states sent to the client so the end user sees a specific reason."""

    SURVEY_NOT_FOUND = "survey_not_found"
    SURVEY_UNDEFINED = "survey_undefined"
    INVALID_QUERY = "invalid_query"
    INVALID_DATA = "invalid_data"
    INACTIVE_SURVEY = "inactive_survey"
    DATABASE_ERROR = "database_error"
    SAVED = "saved"


__all__ = [
    "SurveyBridgeError",
    "ConfigurationError",
    "DatabaseOperationError",
    "MessageState",
]
