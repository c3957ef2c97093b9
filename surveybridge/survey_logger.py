"""
Per-session audit logger.

Every entry is mirrored to the process console (through the standard logging
setup in `surveybridge.utils.logging`) and enqueued on the shared `LogQueue`,
which persists it asynchronously. Logging calls never raise and never wait on
the database.
"""

from __future__ import annotations

import logging
from typing import Optional

from surveybridge.domain.models import LogEntry
from surveybridge.infrastructure.log_queue import LogQueue
from surveybridge.utils.logging import get_logger

console = get_logger("surveybridge.survey")

SEVERITIES = ("INFO", "WARN", "ERROR")

_CONSOLE_LEVELS = {
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
}


def normalize_severity(value: Optional[str]) -> str:
    """INFO, WARN or ERROR; WARNING is accepted as WARN, anything else is INFO."""
    severity = str(value or "INFO").strip().upper()
    if severity == "WARNING":
        return "WARN"
    return severity if severity in SEVERITIES else "INFO"


class SurveyLogger:
    """
    Logger bound to one session and survey.

    With `defer_errors_until_loaded` set, ERROR entries that carry a message
    are kept out of the audit table until `mark_survey_loaded()` is called;
    they still reach the console at DEBUG. `force_log=True` bypasses this.
    """

    def __init__(
        self,
        queue: Optional[LogQueue],
        session_id: str,
        survey_name: str,
        echo: bool = True,
        defer_errors_until_loaded: bool = False,
    ) -> None:
        self._queue = queue
        self.session_id = session_id
        self.survey_name = survey_name
        self.echo = echo
        self.defer_errors_until_loaded = defer_errors_until_loaded
        self.survey_loaded = False
        self.client_ip: Optional[str] = None
        self.closed = False

    def mark_survey_loaded(self) -> None:
        self.survey_loaded = True

    def set_client_ip(self, ip: Optional[str]) -> None:
        self.client_ip = ip

    def close(self) -> None:
        """Detach from the queue; later entries go to the console only."""
        self.closed = True

    def _suppressed(self, severity: str, message: str, force_log: bool) -> bool:
        return (
            self.defer_errors_until_loaded
            and not self.survey_loaded
            and not force_log
            and severity == "ERROR"
            and bool(message)
        )

    def _echo(self, level: int, zone: str, message: str) -> None:
        if not self.echo and level < logging.ERROR:
            return
        console.log(level, message, extra={"zone": zone, "session_id": self.session_id})

    def log_entry(
        self,
        zone: str = "DEFAULT",
        message: str = "",
        type: str = "INFO",
        sql_statement: Optional[str] = None,
        duration_load: Optional[float] = None,
        duration_complete: Optional[float] = None,
        duration_save: Optional[float] = None,
        force_log: bool = False,
    ) -> Optional[LogEntry]:
        """
        Record one structured entry.

        Returns the enqueued entry, or None when it was suppressed or the
        logger is closed.
        """
        severity = normalize_severity(type)
        message = "" if message is None else str(message)
        zone = zone or "DEFAULT"

        if self._suppressed(severity, message, force_log):
            console.debug(
                "Suppressed before survey load: %s",
                message,
                extra={"zone": zone, "session_id": self.session_id},
            )
            return None

        self._echo(_CONSOLE_LEVELS[severity], zone, message)

        if self.closed or self._queue is None:
            return None
        try:
            entry = LogEntry(
                session_id=self.session_id,
                survey_name=self.survey_name,
                zone=zone,
                message=message,
                type=severity,
                sql_statement=sql_statement,
                duration_load=duration_load,
                duration_complete=duration_complete,
                duration_save=duration_save,
                ip_address=self.client_ip,
            )
            self._queue.put(entry)
        except Exception as exc:  # noqa: BLE001 - logging never raises into the session
            console.error("Failed to enqueue log entry: %s", exc, extra={"zone": "LOGGER"})
            return None
        return entry

    def log_message(
        self,
        message: str,
        type: str = "INFO",
        zone: str = "DEFAULT",
        force_log: bool = False,
    ) -> Optional[LogEntry]:
        return self.log_entry(zone=zone, message=message, type=type, force_log=force_log)


__all__ = ["SurveyLogger", "normalize_severity", "SEVERITIES"]
