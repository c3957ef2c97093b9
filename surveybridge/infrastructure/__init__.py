"""
Infrastructure package for surveybridge.

Centralizes database concerns: the connection pool provider, the
transaction-scoped operations facade, and the batched log queue. Keep this
layer focused on I/O and resource management, decoupled from the configurator
and session logic.
"""

from surveybridge.infrastructure.db_factory import PoolProvider, apply_statement_timeout
from surveybridge.infrastructure.db_operations import DatabaseOperations, get_client_ip
from surveybridge.infrastructure.log_queue import LogQueue

__all__ = [
    "DatabaseOperations",
    "LogQueue",
    "PoolProvider",
    "apply_statement_timeout",
    "get_client_ip",
]
