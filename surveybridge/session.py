"""
Session orchestration.

Wires the operations facade, the survey logger and the dynamic field
configurator into the callback model of a client session. The hosting web
framework supplies a `SessionChannel`; the application supplies the shared
`PoolProvider` and `LogQueue`.

Outbound message types: `loadSurvey`, `updateDynamicChoices`, `surveyState`.
Inbound events: `surveyComplete`, `surveyData`, `sessionEnded`.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from surveybridge.dynamic_config import DynamicFieldConfigurator, cascade_child_choices, check_unique
from surveybridge.errors import ConfigurationError, DatabaseOperationError, MessageState
from surveybridge.infrastructure.db_factory import PoolProvider
from surveybridge.infrastructure.db_operations import DatabaseOperations
from surveybridge.infrastructure.log_queue import LogQueue
from surveybridge.survey_logger import SurveyLogger
from surveybridge.utils.query import parse_query
from surveybridge.utils.timing import Stopwatch, round_duration, timed_block

ZONE = "SURVEY"


class SessionChannel(Protocol):
    """What a session needs from the hosting framework."""

    token: str

    def send_message(self, type: str, payload: Any) -> None: ...

    def on(self, event: str, callback: Callable[..., Any]) -> None: ...

    def request_headers(self) -> Mapping[str, Any]: ...

    def query_string(self) -> str: ...


class SurveySession:
    """
    One respondent's session for one survey.

    Parameters
    ----------
    channel : SessionChannel
        Messaging handle of the client connection.
    pool : PoolProvider
        Shared pool, owned by the application.
    log_queue : LogQueue
        Shared audit log queue, owned by the application.
    survey : str | Mapping | None
        Survey definition as JSON text or an already parsed mapping.
    write_table : str
        Table the responses are appended to.
    dynamic_config : Sequence[Mapping] | None
        Dynamic field config entries; see `surveybridge.dynamic_config`.
    active : bool
        An inactive survey is never shown.
    """

    def __init__(
        self,
        channel: SessionChannel,
        pool: PoolProvider,
        log_queue: Optional[LogQueue],
        survey: Union[str, Mapping[str, Any], None],
        write_table: str,
        dynamic_config: Optional[Sequence[Mapping[str, Any]]] = None,
        active: bool = True,
    ) -> None:
        if not isinstance(write_table, str) or not write_table.strip():
            raise ConfigurationError("Invalid write_table parameter")
        self.channel = channel
        self.pool = pool
        self.log_queue = log_queue
        self.survey = survey
        self.write_table = write_table
        self.dynamic_config = list(dynamic_config or [])
        self.active = active

        self.logger: Optional[SurveyLogger] = None
        self.db: Optional[DatabaseOperations] = None
        self.configurator: Optional[DynamicFieldConfigurator] = None
        self.survey_definition: Optional[Dict[str, Any]] = None
        self.params: Dict[str, Dict[str, Any]] = {}
        self.stopwatch = Stopwatch()
        self.loaded = False
        self.ended = False

    @property
    def token(self) -> str:
        return self.channel.token

    def _send_state(self, state: MessageState) -> None:
        self.channel.send_message("surveyState", state.value)

    def _parse_survey(self) -> Optional[MessageState]:
        if self.survey is None or (isinstance(self.survey, str) and not self.survey.strip()):
            return MessageState.SURVEY_UNDEFINED
        if isinstance(self.survey, Mapping):
            self.survey_definition = dict(self.survey)
            return None
        try:
            parsed = json.loads(self.survey)
        except (TypeError, ValueError) as exc:
            self.logger.log_message(f"Error loading survey JSON: {exc}", "ERROR", ZONE, force_log=True)
            return MessageState.SURVEY_NOT_FOUND
        if not isinstance(parsed, dict):
            self.logger.log_message("Survey JSON must be an object", "ERROR", ZONE, force_log=True)
            return MessageState.SURVEY_NOT_FOUND
        self.survey_definition = parsed
        return None

    def start(self) -> bool:
        """
        Set the session up and send the survey.

        Returns True when the survey was loaded; otherwise a `surveyState`
        message naming the reason has been sent.
        """
        self.logger = SurveyLogger(
            self.log_queue,
            self.token,
            self.write_table,
            defer_errors_until_loaded=True,
        )
        self.db = DatabaseOperations(self.pool, self.token, self.logger, self.channel.request_headers())
        self.logger.set_client_ip(self.db.get_client_ip())

        self.channel.on("surveyComplete", lambda *_: self.handle_survey_complete())
        self.channel.on("surveyData", self.handle_survey_data)
        self.channel.on("sessionEnded", lambda *_: self.end())
        self.logger.log_message("Started session", zone="SESSION")

        problem = self._parse_survey()
        if problem is None and not self.active:
            problem = MessageState.INACTIVE_SURVEY
        if problem is not None:
            self.logger.log_message(f"Survey not shown: {problem.value}", "WARN", ZONE)
            self._send_state(problem)
            return False

        query = parse_query(self.channel.query_string())
        if self.dynamic_config:
            self.configurator = DynamicFieldConfigurator(
                self.db, self.dynamic_config, self.write_table, self.logger
            )
            result = self.configurator.prepare(query)
            if not result.valid:
                self.logger.log_message(
                    f"Invalid query: {'; '.join(result.errors)}", "ERROR", ZONE, force_log=True
                )
                self._send_state(MessageState.INVALID_QUERY)
                return False
            self.params = result.params

        self.channel.send_message("loadSurvey", {"survey": self.survey_definition, "params": self.params})
        if self.configurator is not None and self.configurator.payload:
            self.channel.send_message("updateDynamicChoices", self.configurator.payload)

        self.loaded = True
        self.logger.mark_survey_loaded()
        duration_load = round_duration(self.stopwatch.mark("loaded"))
        self.logger.log_entry(zone=ZONE, message="Loaded survey", duration_load=duration_load)
        return True

    def handle_survey_complete(self, *_: Any) -> None:
        self.stopwatch.mark("completed")
        self.logger.log_message("Survey completed", zone=ZONE)

    def _parse_data(self, data: Any) -> Optional[Dict[str, Any]]:
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError as exc:
                self.logger.log_message(f"Error parsing survey data: {exc}", "ERROR", ZONE)
                return None
        if not isinstance(data, Mapping) or not data:
            self.logger.log_message("Survey data must be a non-empty object", "ERROR", ZONE)
            return None
        return dict(data)

    def _apply_dynamic_rules(self, row: Dict[str, Any]) -> bool:
        """Enforce uniqueness and cascade rules; False when the response is blocked."""
        if self.configurator is None:
            return True
        for field, unique_set in self.configurator.unique_sets().items():
            check = check_unique(row.get(field), unique_set, field)
            if check.blocked:
                self.logger.log_message(f"Duplicate value for unique field '{field}'", "ERROR", ZONE)
                return False
            if check.duplicate:
                self.logger.log_message(f"Duplicate value for unique field '{field}'", "WARN", ZONE)

        payload = self.configurator.payload or {}
        for parent, child in self.configurator.cascades():
            current = row.get(child)
            _, value = cascade_child_choices(payload[parent], payload[child], row.get(parent), current)
            if current is not None and value is None:
                row[child] = None
                self.logger.log_message(
                    f"Cleared '{child}': not a valid choice for {parent}={row.get(parent)!r}",
                    "WARN",
                    ZONE,
                )
        return True

    def handle_survey_data(self, data: Any) -> Optional[int]:
        """
        Validate and store one submitted response.

        Returns the id of the stored row, or None when the response was
        rejected (a `surveyState` message says why).
        """
        row = self._parse_data(data)
        if row is not None:
            for name, param in self.params.items():
                row.setdefault(name, param["value"])
        if row is None or not self._apply_dynamic_rules(row):
            self._send_state(MessageState.INVALID_DATA)
            return None

        if self.stopwatch.get("completed") is None:
            self.stopwatch.mark("completed")
        duration_load = round_duration(self.stopwatch.get("loaded"))
        duration_complete = round_duration(self.stopwatch.between("loaded", "completed"))
        row["duration_load"] = duration_load
        row["duration_complete"] = duration_complete

        try:
            with timed_block("save") as stats:
                table = self.db.create_table_if_absent(self.write_table, row, self.survey_definition)
                row_id = self.db.append_row(table, row, self.survey_definition)
            duration_save = round_duration(stats.duration_seconds)
            self.db.update_by_id(table, row_id, {"duration_save": duration_save})
        except DatabaseOperationError:
            self._send_state(MessageState.DATABASE_ERROR)
            return None
        except (ValueError, ConfigurationError) as exc:
            self.logger.log_message(f"Invalid survey data: {exc}", "ERROR", ZONE)
            self._send_state(MessageState.INVALID_DATA)
            return None

        self.logger.log_entry(
            zone=ZONE,
            message="Saved survey response",
            duration_load=duration_load,
            duration_complete=duration_complete,
            duration_save=duration_save,
        )
        self._send_state(MessageState.SAVED)
        return row_id

    def end(self) -> None:
        """Release per-session state; safe to call more than once."""
        if self.ended:
            return
        self.ended = True
        if self.logger is not None:
            self.logger.log_message("Ended session", zone="SESSION")
            self.logger.close()
        if self.configurator is not None:
            self.configurator.clear()


__all__: List[str] = ["SessionChannel", "SurveySession"]
