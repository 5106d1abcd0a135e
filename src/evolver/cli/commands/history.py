"""``evolver history`` and ``evolver revert``."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from evolver.core.errors import VersionControlError

from ..helpers import create_git, create_manager_or_exit, load_config_or_exit
from ..output import (
    console,
    create_commits_table,
    create_improvements_table,
    output_error,
)


def history(
    config_file: Path | None = typer.Option(
        None,
        "--config",
        help="Path to the YAML configuration file",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Number of evolution commits to show",
    ),
) -> None:
    """Show recorded improvements and the evolution commits."""
    config = load_config_or_exit(config_file, console)

    improvements = create_manager_or_exit(config, console).history()
    if improvements:
        console.print(create_improvements_table(improvements))
    else:
        console.print("[dim]No improvements recorded.[/dim]")

    if not config.git.enabled:
        return
    try:
        commits = asyncio.run(create_git(config).history(limit))
    except VersionControlError as e:
        output_error(str(e), error_code="GIT")
        raise typer.Exit(1) from None
    if commits:
        console.print(create_commits_table(commits))


def revert(
    commit: str = typer.Argument(..., help="Commit to undo"),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        help="Path to the YAML configuration file",
    ),
) -> None:
    """Undo an evolution commit with a new revert commit."""
    config = load_config_or_exit(config_file, console)
    if not config.git.enabled:
        output_error("Revert needs git, but git is disabled in the configuration")
        raise typer.Exit(1)

    try:
        new_commit = asyncio.run(create_git(config).revert(commit))
    except VersionControlError as e:
        output_error(str(e), error_code="GIT")
        raise typer.Exit(1) from None
    console.print(f"[green]Reverted {commit[:7]}[/green] in {new_commit[:7]}")
