"""Command line interface for pushci."""

from __future__ import annotations

import logging
import shlex
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.table import Table

from .cache import DirectoryCache, fingerprint
from .config import (
    PipelineConfig,
    WorkflowError,
    default_cache_dir,
    default_runs_dir,
    default_tmp_dir,
    load_workflow,
    rust_pipeline,
)
from .environment import NoopProvisioner, PathProvisioner, RustupProvisioner, ToolchainProvisioner
from .models import RunStatus
from .output import Verbosity, configure_output, get_output_manager
from .pipeline import Pipeline
from .trigger import TriggerListener, local_push_event
from .workspace import list_runs

EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 130,
}


def _get_console():
    """Get console from OutputManager to respect NO_COLOR settings."""
    return get_output_manager().console


def _load_config(workflow: Path | None, job: str | None) -> PipelineConfig:
    if workflow is None:
        return rust_pipeline()
    try:
        return load_workflow(workflow, job=job)
    except WorkflowError as e:
        raise click.ClickException(str(e)) from e


def _required_tools(config: PipelineConfig) -> tuple[str, ...]:
    """Tools the pipeline needs: declared ones, else the programs its steps invoke."""
    if config.required_tools:
        return config.required_tools
    tools: list[str] = []
    for step in config.steps:
        words = shlex.split(step.command)
        if words and words[0] not in tools:
            tools.append(words[0])
    return tuple(tools)


def _provisioner(kind: str, config: PipelineConfig) -> ToolchainProvisioner:
    if kind == "rustup":
        return RustupProvisioner()
    if kind == "path":
        return PathProvisioner(_required_tools(config))
    return NoopProvisioner()


workflow_option = click.option(
    "--workflow",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="GitHub Actions style workflow file (default: built-in Rust pipeline)",
)
job_option = click.option("--job", default=None, help="Job to use when the workflow has several")
project_option = click.option(
    "--project",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project directory",
)
cache_dir_option = click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Cache directory (default: ~/.pushci/cache, or PUSHCI_CACHE_DIR)",
)
runs_dir_option = click.option(
    "--runs-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Run records directory (default: ~/.pushci/runs, or PUSHCI_RUNS_DIR)",
)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """Run a push-triggered, fail-fast CI pipeline locally."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@workflow_option
@job_option
@project_option
@cache_dir_option
@click.option("--no-cache", is_flag=True, default=False, help="Neither restore nor save the cache")
@runs_dir_option
@click.option(
    "--tmp-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Parent of run working directories (default: system temp dir, or PUSHCI_TMPDIR)",
)
@click.option("--timeout", type=float, default=None, help="Default step timeout in seconds")
@click.option(
    "--toolchain-check",
    type=click.Choice(["rustup", "path", "none"]),
    default="path",
    show_default=True,
    help="How to provision the toolchain",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show the output of every step")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only show the final status")
def run(
    workflow: Path | None,
    job: str | None,
    project: Path,
    cache_dir: Path | None,
    no_cache: bool,
    runs_dir: Path | None,
    tmp_dir: Path | None,
    timeout: float | None,
    toolchain_check: str,
    verbose: bool,
    quiet: bool,
) -> None:
    """Simulate a push to PROJECT and run the pipeline once."""
    config = _load_config(workflow, job)
    if timeout is not None:
        config = config.model_copy(update={"timeout": timeout})

    verbosity = Verbosity.VERBOSE if verbose else Verbosity.QUIET if quiet else Verbosity.NORMAL
    output = configure_output(verbosity=verbosity)

    pipeline = Pipeline(
        config,
        project,
        store=None if no_cache else DirectoryCache(cache_dir or default_cache_dir()),
        provisioner=_provisioner(toolchain_check, config),
        output=output,
        tmp_root=tmp_dir or default_tmp_dir(),
        runs_dir=runs_dir or default_runs_dir(),
    )

    with TriggerListener(pipeline, max_concurrent_runs=1) as listener:
        future = listener.submit(local_push_event(project))
        try:
            result = future.result()
        except KeyboardInterrupt:
            # The run notices the cancellation, stops its step and still saves the cache
            listener.shutdown(wait=True, cancel_runs=True)
            result = future.result()

    sys.exit(EXIT_CODES[result.status])


@cli.command()
@workflow_option
@job_option
def steps(workflow: Path | None, job: str | None) -> None:
    """Show the resolved pipeline: environment, toolchain and steps."""
    config = _load_config(workflow, job)
    console = _get_console()

    console.print(f"{config.name} (toolchain: {config.toolchain})", style="bold", markup=False, highlight=False)
    for name, value in config.env.items():
        console.print(f"  env {name}={value}", markup=False, highlight=False)

    table = Table("#", "step", "command", "flags")
    for index, step in enumerate(config.steps, start=1):
        flags = []
        if step.continue_on_error:
            flags.append("continue-on-error")
        if (step_timeout := config.step_timeout(step)) is not None:
            flags.append(f"timeout={step_timeout:g}s")
        table.add_row(str(index), step.name, step.command, ", ".join(flags))
    console.print(table)


@cli.command()
@workflow_option
@job_option
@project_option
def key(workflow: Path | None, job: str | None, project: Path) -> None:
    """Print the cache fingerprint of PROJECT."""
    config = _load_config(workflow, job)
    click.echo(fingerprint(project, config.cache))


@cli.command()
@runs_dir_option
@click.option("--limit", type=int, default=20, show_default=True, help="Number of runs to show")
def runs(runs_dir: Path | None, limit: int) -> None:
    """List recent runs."""
    records = list_runs(runs_dir or default_runs_dir(), limit=limit)
    console = _get_console()
    if not records:
        console.print("No runs recorded")
        return

    table = Table("run", "status", "event", "created", "steps", "failed step")
    for record in records:
        failed = record.failed_step
        table.add_row(
            record.run_id,
            record.status,
            record.event.get("description", ""),
            record.created_at[:19].replace("T", " "),
            str(len(record.steps)),
            failed.name if failed is not None else "",
        )
    console.print(table)


@cli.group()
def cache() -> None:
    """Inspect and prune the dependency cache."""


@cache.command("list")
@cache_dir_option
def cache_list(cache_dir: Path | None) -> None:
    """List cache entries, newest first."""
    store = DirectoryCache(cache_dir or default_cache_dir())
    for entry in store.entries():
        modified = datetime.fromtimestamp(entry.modified).isoformat(timespec="seconds")
        click.echo(f"{entry.key}  {entry.size:>12}  {modified}")


@cache.command("prune")
@cache_dir_option
@click.option("--keep", type=click.IntRange(min=0), default=5, show_default=True, help="Entries to keep")
def cache_prune(cache_dir: Path | None, keep: int) -> None:
    """Delete all but the newest entries."""
    store = DirectoryCache(cache_dir or default_cache_dir())
    removed = store.prune(keep)
    click.echo(f"Removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


def main() -> None:
    cli()
