# src/notesync/cli.py
"""notesync Command Line Interface.

Entry point for the notesync CLI tool. `notesync run` exits with the
run's ExitStatus code, so schedulers can branch on it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from notesync import __version__
from notesync.cli_formatters import create_console_formatters, create_json_formatters, subscribe_formatters
from notesync.contracts.enums import ExitStatus, RunType
from notesync.core.config import NotesyncSettings, load_settings

__all__ = [
    "app",
    "load_settings",
]

app = typer.Typer(
    name="notesync",
    help="notesync: ingest OSM notes from the planet dump and the API delta.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"notesync version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """notesync: ingest OSM notes from the planet dump and the API delta."""
    from notesync.core.logging import configure_logging

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(json_output=json_logs, level=log_level)

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )


def _load_settings_or_exit(settings: str) -> NotesyncSettings:
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(int(ExitStatus.INTERNAL_ERROR)) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(int(ExitStatus.INTERNAL_ERROR)) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(int(ExitStatus.INTERNAL_ERROR)) from None


@app.command()
def run(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    mode: RunType = typer.Option(
        RunType.API,
        "--mode",
        "-m",
        help="'api' applies the incremental delta; 'planet' reloads the full snapshot.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Execute one ingestion run and exit with its status code."""
    from notesync.core.events import EventBus
    from notesync.engine.coordinator import ExecutionCoordinator

    config = _load_settings_or_exit(settings)

    event_bus = EventBus()
    formatters = create_json_formatters() if output_format == "json" else create_console_formatters()
    subscribe_formatters(event_bus, formatters)

    coordinator = ExecutionCoordinator(config, event_bus=event_bus)
    try:
        report = coordinator.run(mode)
    finally:
        coordinator.close()

    if report.error and output_format == "console":
        typer.echo(f"{report.exit_status.name}: {report.error}", err=True)
    for warning in report.warnings:
        if output_format == "console":
            typer.secho(f"Warning: {warning}", fg=typer.colors.YELLOW, err=True)
    raise typer.Exit(int(report.exit_status))


@app.command()
def status(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    output_format: Literal["console", "json"] = typer.Option(
        "console",
        "--format",
        "-f",
        help="Output format: 'console' (human-readable) or 'json' (structured JSON).",
    ),
) -> None:
    """Show the ingestion cursor, lock holders, and any failure marker."""
    from notesync.core.coordination import FailureMarker, RunLock
    from notesync.core.store import NotesDB
    from notesync.engine.reconciler import Reconciler

    config = _load_settings_or_exit(settings)
    marker = FailureMarker(config.coordination.marker_path).read()
    with NotesDB.from_settings(config.database) as db:
        cursor = Reconciler(db).read_cursor()
        holders = RunLock.holders(db)

    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "cursor": cursor.isoformat() if cursor else None,
                    "locks": [
                        {
                            "run_type": holder.run_type,
                            "holder": str(holder.holder),
                            "started_at": holder.started_at.isoformat(),
                            "heartbeat_at": holder.heartbeat_at.isoformat(),
                        }
                        for holder in holders
                    ],
                    "failure_marker": marker.to_dict() if marker else None,
                }
            )
        )
        return

    typer.echo(f"Cursor: {cursor.isoformat() if cursor else '(none; next api run falls back to planet)'}")
    if holders:
        typer.echo("Locks:")
        for holder in holders:
            typer.echo(
                f"  {holder.run_type}: {holder.holder} since {holder.started_at.isoformat()} "
                f"(heartbeat {holder.heartbeat_at.isoformat()})"
            )
    else:
        typer.echo("Locks: none")
    if marker:
        typer.secho(
            f"Failure marker: {marker.error_class} in {marker.stage} at {marker.created_at.isoformat()}: {marker.message}",
            fg=typer.colors.RED,
        )
        typer.echo("  Clear it with: notesync clear-failure -s <settings>")
    else:
        typer.echo("Failure marker: none")


@app.command("clear-failure")
def clear_failure(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Remove the failure marker so scheduled runs resume."""
    from notesync.core.coordination import FailureMarker

    config = _load_settings_or_exit(settings)
    marker = FailureMarker(config.coordination.marker_path)
    record = marker.read()
    if not marker.clear():
        typer.echo(f"No failure marker at {marker.path}")
        return
    detail = f" ({record.error_class} in {record.stage})" if record else ""
    typer.echo(f"Cleared failure marker {marker.path}{detail}")


if __name__ == "__main__":
    app()
