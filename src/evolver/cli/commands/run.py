"""``evolver run``: evolve the documentation against one or more workflows."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from evolver.core.errors import ConfigurationError, EvolverError

from ..helpers import (
    create_manager_or_exit,
    is_quiet,
    is_verbose,
    load_catalog,
    load_config_or_exit,
    run_workflow,
)
from ..output import (
    console,
    create_catalog_table,
    create_generations_table,
    create_result_panel,
    create_statistics_table,
    output_error,
)


def run(
    run_all: bool = typer.Option(
        False,
        "--all",
        help="Run every workflow in the catalog",
    ),
    category: str | None = typer.Option(
        None,
        "--category",
        "-c",
        help="Run every workflow of a category",
    ),
    workflow: str | None = typer.Option(
        None,
        "--workflow",
        "-w",
        help="Run a single workflow by name",
    ),
    stats: bool = typer.Option(
        False,
        "--stats",
        help="Show workflow and improvement statistics without running",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        help="Path to the YAML configuration file",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Continue each workflow after its latest checkpoint",
    ),
) -> None:
    """Run the evolutionary improvement loop."""
    config = load_config_or_exit(config_file, console)
    try:
        catalog = load_catalog(config)
    except ConfigurationError as e:
        output_error(str(e), error_code=e.code)
        raise typer.Exit(1) from None

    if stats or not (run_all or category or workflow):
        console.print(create_catalog_table(catalog))
        history_file = config.paths.history_file
        if history_file is not None and history_file.exists():
            manager = create_manager_or_exit(config, console)
            console.print(create_statistics_table(manager.statistics()))
        return

    selected = catalog.select(run_all=run_all, category=category, name=workflow)
    if not selected:
        target = workflow or category or "catalog"
        output_error(
            f"No workflow matches {target!r}",
            error_code="NO_WORKFLOW",
            hints=[f"Known categories: {', '.join(catalog.categories)}"],
        )
        raise typer.Exit(1)

    manager = create_manager_or_exit(config, console)
    failed: list[str] = []
    for wf in selected:
        if not is_quiet():
            console.print(f"\n[bold cyan]Evolving {wf.name}[/bold cyan] ({wf.category})")
        try:
            result = asyncio.run(run_workflow(config, wf, manager, resume=resume))
        except ConfigurationError as e:
            output_error(str(e), error_code=e.code)
            raise typer.Exit(1) from None
        except EvolverError as e:
            output_error(f"{wf.name} failed: {e}")
            failed.append(wf.name)
            continue
        except KeyboardInterrupt:
            console.print("[yellow]Interrupted[/yellow]")
            raise typer.Exit(130) from None

        if not is_quiet():
            console.print(create_result_panel(wf.name, result))
            if is_verbose():
                console.print(create_generations_table(result))

    if failed:
        console.print(f"[red]{len(failed)} workflow(s) failed:[/red] {', '.join(failed)}")
        raise typer.Exit(1)
