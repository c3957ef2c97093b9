from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Optional

import typer

from surveybridge.config import get_settings
from surveybridge.dynamic_config import DynamicFieldConfigurator
from surveybridge.errors import ConfigurationError
from surveybridge.infrastructure.db_factory import PoolProvider
from surveybridge.infrastructure.db_operations import DatabaseOperations
from surveybridge.infrastructure.log_queue import LogQueue
from surveybridge.reporter import print_config_report, print_settings
from surveybridge.survey_logger import SurveyLogger
from surveybridge.utils.logging import configure_logging
from surveybridge.utils.query import parse_query

app = typer.Typer(help="surveybridge: survey persistence and dynamic field tooling.")


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    print_settings(settings)
    missing = settings.missing_database_fields()
    if missing:
        typer.echo(f"Missing database settings: {', '.join(missing)}", err=True)


@app.command("init-db")
def init_db() -> None:
    """
    Create the shared log table if it does not exist.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    try:
        settings.require_database()
        with PoolProvider(settings) as provider:
            ready = LogQueue(provider, settings.log_table).ensure_table()
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    if not ready:
        typer.echo(f"Could not create log table '{settings.log_table}'.", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Log table '{settings.log_table}' is ready.")


@app.command("check-config")
def check_config(
    config_json: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON file holding the list of dynamic field config entries.",
    ),
    query: Optional[str] = typer.Option(
        None,
        "--query",
        "-q",
        help="Survey URL or query string to validate (e.g. '?source=GITHUB').",
    ),
    write_table: Optional[str] = typer.Option(
        None,
        "--write-table",
        "-w",
        help="Write table for unique/exclude_existing entries (default from settings).",
    ),
    payload: bool = typer.Option(True, "--payload/--no-payload", help="Print the client payload."),
) -> None:
    """
    Run the dynamic field configurator against the database and report the verdict.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    try:
        configs = json.loads(config_json.read_text(encoding="utf-8"))
    except ValueError as exc:
        typer.echo(f"Invalid JSON in {config_json}: {exc}", err=True)
        raise typer.Exit(code=2)

    try:
        settings.require_database()
        with PoolProvider(settings) as provider:
            logger = SurveyLogger(None, "cli", write_table or settings.write_table or "")
            db = DatabaseOperations(provider, "cli", logger)
            configurator = DynamicFieldConfigurator(
                db, configs, write_table or settings.write_table, logger
            )
            result = configurator.prepare(parse_query(query))
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)

    print_config_report(result, show_payload=payload)
    if not result.valid:
        raise typer.Exit(code=1)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
