"""
Configuration settings for surveybridge.

Uses Pydantic Settings to load environment variables for the database
connection, the write/log tables, logging and pool behaviour. The five database
fields have no defaults: a deployment that does not provide them fails at
startup with a `ConfigurationError`.
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, List, Mapping, Optional

from psycopg.conninfo import make_conninfo
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from surveybridge.errors import ConfigurationError
from surveybridge.utils.logging import get_logger

log = get_logger(__name__)

REQUIRED_DB_FIELDS = ("db_host", "db_port", "db_name", "db_user", "db_password")

# db_config key -> environment variable, in the order they are checked
_ENV_VARS = {
    "host": "DB_HOST",
    "port": "DB_PORT",
    "db_name": "DB_NAME",
    "user": "DB_USER",
    "password": "DB_PASSWORD",
}


class Settings(BaseSettings):
    # Database
    db_host: Optional[str] = Field(None, alias="DB_HOST")
    db_port: Optional[int] = Field(None, alias="DB_PORT")
    db_name: Optional[str] = Field(None, alias="DB_NAME")
    db_user: Optional[str] = Field(None, alias="DB_USER")
    db_password: Optional[str] = Field(None, alias="DB_PASSWORD")

    # Tables
    write_table: Optional[str] = Field(None, alias="WRITE_TABLE")
    log_table: str = Field("survey_logs", alias="LOG_TABLE")

    # Logging
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    log_flush_interval_seconds: float = Field(1.0, alias="LOG_FLUSH_INTERVAL_SECONDS")

    # Pool and statement limits
    pool_min_size: int = Field(1, alias="POOL_MIN_SIZE")
    pool_max_size: int = Field(10, alias="POOL_MAX_SIZE")
    pool_timeout_seconds: float = Field(10.0, alias="POOL_TIMEOUT_SECONDS")
    db_statement_timeout_ms: int = Field(5_000, alias="DB_STATEMENT_TIMEOUT_MS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
        populate_by_name=True,
    )

    def missing_database_fields(self) -> List[str]:
        """Names of the required database fields that are unset or empty."""
        return [name for name in REQUIRED_DB_FIELDS if getattr(self, name) in (None, "")]

    def require_database(self) -> None:
        """
        Raise ConfigurationError unless all five database fields are present.
        """
        missing = self.missing_database_fields()
        if missing:
            raise ConfigurationError(
                f"Missing required database configuration fields: {', '.join(missing)}"
            )

    def dsn(self) -> str:
        """Compose a libpq connection string from settings."""
        self.require_database()
        return make_conninfo(
            host=self.db_host,
            port=str(self.db_port),
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


def apply_environment(db_config: Mapping[str, Any]) -> List[str]:
    """
    Export database settings to the environment without overwriting.

    Each of host/port/db_name/user/password found in `db_config` is written to
    its `DB_*` variable only when that variable is unset. The settings cache is
    cleared afterwards so the next `get_settings()` sees the result.

    Returns
    -------
    List[str]
        Names of the variables that were set by this call.
    """
    written: List[str] = []
    for key, var_name in _ENV_VARS.items():
        if key not in db_config or db_config[key] is None:
            continue
        if os.environ.get(var_name, "") == "":
            os.environ[var_name] = str(db_config[key])
            written.append(var_name)
            log.info("Set %s", var_name)
        else:
            log.info("Found existing %s", var_name)
    get_settings.cache_clear()
    return written


def setup_survey_environment(db_config: Mapping[str, Any], multisurvey: bool = False):
    """
    Validate startup configuration and open the application's connection pool.

    Parameters
    ----------
    db_config : Mapping
        host, port, db_name, user, password and (unless `multisurvey`) a
        non-empty write_table.
    multisurvey : bool
        Skip the write_table check when one app serves several surveys.

    Returns
    -------
    PoolProvider
        An opened pool; the caller owns it and must close it on shutdown.

    Raises
    ------
    ConfigurationError
        On a missing write table, missing database fields or a pool that
        cannot be opened.
    """
    from surveybridge.infrastructure.db_factory import PoolProvider

    write_table = db_config.get("write_table")
    if not multisurvey and (not isinstance(write_table, str) or not write_table.strip()):
        log.error("db_config write_table must be a non-empty string")
        raise ConfigurationError("Invalid write_table parameter")

    missing = [key for key in _ENV_VARS if key not in db_config]
    if missing:
        log.error("Missing required database configuration fields: %s", ", ".join(missing))
        raise ConfigurationError(
            f"Missing required database configuration fields: {', '.join(missing)}"
        )

    apply_environment(db_config)
    settings = get_settings()
    settings.require_database()

    provider = PoolProvider(settings)
    try:
        provider.open()
    except Exception as exc:
        log.error("Failed to initialize database pool: %s", exc)
        raise ConfigurationError("Database pool initialization failed") from exc
    log.info("Started database pool")
    return provider


__all__ = [
    "Settings",
    "get_settings",
    "apply_environment",
    "setup_survey_environment",
    "REQUIRED_DB_FIELDS",
]
