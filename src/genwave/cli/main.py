import asyncio
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from pathlib import Path
from typing import Annotated

import typer
from rich import print
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from genwave.api import build_engine
from genwave.cli.callbacks import load_file_callback, positive_int_callback
from genwave.cli.enums import LogLevel
from genwave.config import Settings
from genwave.exceptions import BatchNotFoundError, BatchValidationError, GenwaveError
from genwave.models import BatchSnapshot
from genwave.notifications import BATCH_UPDATE
from genwave.status import BatchStatus
from genwave.templates import InMemoryTemplateStore
from genwave.utils.files import read_inputs_file
from genwave.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main(
    log_level: Annotated[
        LogLevel,
        typer.Option("--log-level", help="Verbosity of engine logs", case_sensitive=False),
    ] = LogLevel.warning,
):
    """Run batches of long-running video generations"""
    setup_logging(level=log_level.value)


def print_batch(snapshot: BatchSnapshot):
    status_color = "green" if snapshot.status is BatchStatus.COMPLETED else "yellow"
    if snapshot.status is BatchStatus.FAILED:
        status_color = "red"
    values = "\n".join(
        [
            f"ID: {snapshot.id}",
            f"Status: [{status_color}]{snapshot.status.value}[/{status_color}]",
            f"Progress: {snapshot.progress}%",
            f"Jobs: {snapshot.completed_jobs} completed, {snapshot.failed_jobs} failed, {snapshot.total_jobs} total",
        ]
    )
    console = Console()
    console.print(Panel(values, title=snapshot.name, expand=False, highlight=True))

    if snapshot.results or snapshot.errors:
        table = Table("Job", "Outcome", "Detail", title="Jobs")
        for entry in sorted(snapshot.results, key=lambda entry: entry.index):
            detail = entry.result.get("artifactUrl") or entry.result.get("videoUri") or ""
            table.add_row(entry.job_id, "[green]completed[/green]", str(detail))
        for entry in sorted(snapshot.errors, key=lambda entry: entry.index):
            table.add_row(entry.job_id, "[red]failed[/red]", entry.error)
        console.print(table)


async def _run_batch(
    *,
    settings: Settings,
    inputs: list[dict],
    template_id: str | None,
    batch_settings: dict,
    name: str | None,
) -> BatchSnapshot:
    engine = build_engine(settings=settings)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
        ) as progress:
            task_id = progress.add_task(description="Generating...", total=100)
            engine.notifications.subscribe(
                BATCH_UPDATE,
                lambda payload: progress.update(task_id, completed=payload["progress"]),
            )
            batch_id = await engine.scheduler.create_batch(
                inputs,
                template_id=template_id,
                settings=batch_settings,
                name=name,
            )
            snapshot = await engine.scheduler.wait(batch_id)
        if snapshot is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return snapshot
    finally:
        await engine.aclose()


@app.command(name="run")
def run_batch(
    inputs_file: Annotated[
        Path,
        typer.Argument(
            help="JSON array or JSONL file with one input object per line, e.g. {\"text\": \"...\"}",
            callback=load_file_callback,
        ),
    ],
    template: Annotated[
        str | None, typer.Option("--template", "-t", help="Template used to expand each input")
    ] = None,
    name: Annotated[str | None, typer.Option(help="Display name of the batch")] = None,
    max_concurrent: Annotated[
        int | None,
        typer.Option(help="Jobs run per wave", callback=positive_int_callback),
    ] = None,
    retry_attempts: Annotated[
        int | None,
        typer.Option(help="Attempts per job for retryable failures", callback=positive_int_callback),
    ] = None,
    optimize: Annotated[
        bool,
        typer.Option("--optimize/--no-optimize", help="Rewrite text prompts before generation"),
    ] = True,
    webhook_url: Annotated[
        str | None, typer.Option(help="HTTP callback receiving job and batch events")
    ] = None,
    api_key: Annotated[
        str | None,
        typer.Option(help="API key to use instead of GEMINI_API_KEYS / GEMINI_API_KEY"),
    ] = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Write the final batch state as JSON")
    ] = None,
):
    """Run a batch and wait for every job to settle"""
    try:
        inputs = read_inputs_file(inputs_file)
    except ValueError as error:
        typer.echo(f"Could not read inputs: {error}")
        raise typer.Exit(1)

    batch_settings: dict = {"optimize_prompts": optimize}
    if max_concurrent is not None:
        batch_settings["max_concurrent"] = max_concurrent
    if retry_attempts is not None:
        batch_settings["retry_attempts"] = retry_attempts
    if api_key is not None:
        batch_settings["api_key"] = api_key
    if webhook_url is not None:
        batch_settings["webhook_url"] = webhook_url

    try:
        snapshot = asyncio.run(
            _run_batch(
                settings=Settings.from_env(),
                inputs=inputs,
                template_id=template,
                batch_settings=batch_settings,
                name=name,
            )
        )
    except BatchValidationError as error:
        typer.echo(f"Batch rejected: {error}")
        raise typer.Exit(1)
    except GenwaveError as error:
        typer.echo(f"Batch failed: {error}")
        raise typer.Exit(1)

    print_batch(snapshot=snapshot)
    if output is not None:
        output.write_text(snapshot.model_dump_json(by_alias=True, indent=2))
        print(f"Batch state written to [green]{output.as_posix()}[/green]")
    if snapshot.failed_jobs or snapshot.status is not BatchStatus.COMPLETED:
        raise typer.Exit(1)


@app.command(name="templates")
def list_templates():
    """List the available prompt templates"""
    table = Table("ID", "Name", "Description", "Variations", title="Templates")
    for template in InMemoryTemplateStore().list_templates():
        table.add_row(
            template.id,
            template.name,
            template.description,
            str(len(template.variations)),
        )
    console = Console()
    console.print(table)


async def _check_operation(*, settings: Settings, handle: str, api_key: str | None):
    engine = build_engine(settings=settings)
    try:
        return await engine.operations.check_status(handle, api_key=api_key)
    finally:
        await engine.aclose()


@app.command(name="status")
def operation_status(
    handle: Annotated[str, typer.Argument(help="Provider operation handle, e.g. operations/abc")],
    api_key: Annotated[
        str | None,
        typer.Option(help="API key to use instead of GEMINI_API_KEYS / GEMINI_API_KEY"),
    ] = None,
):
    """Check the status of a generation operation once"""
    try:
        status = asyncio.run(
            _check_operation(settings=Settings.from_env(), handle=handle, api_key=api_key)
        )
    except GenwaveError as error:
        typer.echo(f"Status check failed: {error}")
        raise typer.Exit(1)

    if not status.done:
        print(f"Operation [yellow]{handle}[/yellow] is running ({round(status.progress)}%)")
        return
    if status.success:
        result = status.result or {}
        print(f"Operation [green]{handle}[/green] completed")
        artifact = result.get("artifactUrl") or result.get("videoUri")
        if artifact:
            print(f"Artifact: {artifact}")
        return
    print(f"Operation [red]{handle}[/red] failed: {status.error}")
    raise typer.Exit(1)


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("genwave"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
