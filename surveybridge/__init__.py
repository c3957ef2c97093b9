"""
surveybridge - persistence and dynamic-field glue for web survey applications.

This package stores survey responses in PostgreSQL and keeps an audit trail of
every session:

- A transaction-scoped operations facade over an explicitly owned connection
  pool, with column-type inference and append-only schema evolution
- A queued audit logger that persists entries in periodic batches
- A dynamic field configurator that validates URL parameters and resolves
  choice lists, parent/child cascades and uniqueness sets for the client
- Session orchestration over a framework-supplied message channel
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from surveybridge.config import Settings, get_settings, setup_survey_environment
from surveybridge.dynamic_config import DynamicFieldConfigurator
from surveybridge.errors import (
    ConfigurationError,
    DatabaseOperationError,
    MessageState,
    SurveyBridgeError,
)
from surveybridge.infrastructure import DatabaseOperations, LogQueue, PoolProvider, get_client_ip
from surveybridge.session import SessionChannel, SurveySession
from surveybridge.survey_logger import SurveyLogger
from surveybridge.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    "setup_survey_environment",
    # Errors
    "SurveyBridgeError",
    "ConfigurationError",
    "DatabaseOperationError",
    "MessageState",
    # Database
    "PoolProvider",
    "DatabaseOperations",
    "get_client_ip",
    # Logging
    "LogQueue",
    "SurveyLogger",
    "configure_logging",
    "get_logger",
    # Configurator and sessions
    "DynamicFieldConfigurator",
    "SessionChannel",
    "SurveySession",
]
