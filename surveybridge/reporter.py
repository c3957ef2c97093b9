from __future__ import annotations

from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from surveybridge.config import Settings
from surveybridge.domain.models import ConfiguratorResult

_MASK = "********"


def settings_rows(settings: Settings) -> List[Dict[str, str]]:
    """
    Effective settings as name/value pairs, with the password masked.
    """
    rows: List[Dict[str, str]] = []
    for name in Settings.model_fields:
        value = getattr(settings, name)
        if name == "db_password" and value:
            shown = _MASK
        elif value is None:
            shown = "(unset)"
        else:
            shown = str(value)
        rows.append({"name": name, "value": shown})
    return rows


def print_settings(settings: Settings, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="surveybridge settings", box=box.ROUNDED)
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="magenta")
    for row in settings_rows(settings):
        table.add_row(row["name"], row["value"], style="dim" if row["value"] == "(unset)" else None)
    console.print(table)


def print_config_report(
    result: ConfiguratorResult,
    console: Optional[Console] = None,
    show_payload: bool = True,
) -> None:
    """
    Render a configurator verdict: errors and warnings, validated URL
    parameters, and optionally the client payload as JSON.
    """
    console = console or Console()

    verdict = "[bold green]VALID[/bold green]" if result.valid else "[bold red]INVALID[/bold red]"
    table = Table(
        title=f"Dynamic field configuration: {verdict}",
        box=box.ROUNDED,
        caption=f"{len(result.errors)} errors, {len(result.warnings)} warnings",
    )
    table.add_column("Severity", no_wrap=True)
    table.add_column("Message")
    for message in result.errors:
        table.add_row("[red]ERROR[/red]", escape(message))
    for message in result.warnings:
        table.add_row("[yellow]WARN[/yellow]", escape(message))
    if not result.errors and not result.warnings:
        table.add_row("[green]OK[/green]", "No problems found")
    console.print(table)

    if result.params:
        params = Table(title="URL parameters", box=box.SIMPLE)
        params.add_column("Parameter", style="cyan", no_wrap=True)
        params.add_column("Value", style="magenta")
        params.add_column("Display text", style="green")
        for name, param in result.params.items():
            params.add_row(escape(name), escape(str(param.get("value"))), escape(str(param.get("text"))))
        console.print(params)

    if show_payload:
        if result.payload is None:
            console.print("[yellow]No dynamic fields resolved.[/yellow]")
        else:
            console.print_json(data=_jsonable(result.payload))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


__all__ = ["print_config_report", "print_settings", "settings_rows"]
