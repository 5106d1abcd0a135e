"""Evolver CLI.

Package structure:
    cli/
    ├── __init__.py       # App assembly and global options
    ├── helpers.py        # Output/logging state, component factories
    ├── output.py         # Rich formatting
    └── commands/
        ├── run.py        # run
        └── history.py    # history, revert
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from evolver import __version__

from . import helpers
from .commands import history, revert, run
from .helpers import (
    OutputLevel,
    configure_global_logging,
    set_log_file,
    set_log_format,
    set_log_level,
    set_output_level,
)
from .output import console

app = typer.Typer(
    name="evolver",
    help="Evolutionary improvement of tool documentation for AI agents",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"evolver v{__version__}")
        raise typer.Exit()


def verbose_callback(value: bool) -> None:
    if value:
        set_output_level(OutputLevel.VERBOSE)


def quiet_callback(value: bool) -> None:
    if value:
        set_output_level(OutputLevel.QUIET)


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        callback=verbose_callback,
        is_eager=True,
        help="Show per-generation tables",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        callback=quiet_callback,
        is_eager=True,
        help="Show errors only",
    ),
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="EVOLVER_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Path for log file output",
            envvar="EVOLVER_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: json or console",
            envvar="EVOLVER_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """Evolver: improve tool documentation from observed agent behavior."""
    configure_global_logging(console)


app.command()(run)
app.command()(history)
app.command()(revert)


__all__ = ["app", "helpers", "main"]
