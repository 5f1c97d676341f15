"""Command line interface for the flowmail automation engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
import yaml

from flowmail.config import load_config
from flowmail.constants import DEFAULT_WORKSPACE
from flowmail.contracts import load_automation
from flowmail.engine import AutomationEngine
from flowmail.errors import FlowmailError
from flowmail.persistence import AutomationRecord

app = typer.Typer(help="CLI for flowmail automations")

runs_app = typer.Typer(help="Inspect and cancel automation runs")
automation_app = typer.Typer(help="Manage automation definitions")

app.add_typer(runs_app, name="runs")
app.add_typer(automation_app, name="automation")

WorkspaceOption = typer.Option(DEFAULT_WORKSPACE, "--workspace", "-w")

T = TypeVar("T")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to config YAML"),
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """Flowmail CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": str(config) if config else None}


def _engine(ctx: typer.Context) -> AutomationEngine:
    config_path = (ctx.obj or {}).get("config_path")
    return AutomationEngine.from_config(load_config(config_path))


def _run(ctx: typer.Context, action: Callable[[AutomationEngine], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh engine and close it afterwards."""

    async def _main() -> T:
        engine = _engine(ctx)
        try:
            return await action(engine)
        finally:
            await engine.close()

    return asyncio.run(_main())


def _echo_errors(errors: list[str]) -> None:
    for error in errors:
        typer.secho(f"  ! {error}", fg=typer.colors.YELLOW)


@app.command()
def scan(
    ctx: typer.Context,
    workspace: str = WorkspaceOption,
    limit: Optional[int] = typer.Option(None, help="Max events to read (1-200)"),
) -> None:
    """
    Match new events against running automations and open runs.

    Example:
        flowmail scan --workspace acme --limit 100
    """
    result = _run(ctx, lambda engine: engine.scan(workspace, limit))
    typer.echo(
        f"Scanned {result.processed_events} events, opened {result.matched} runs"
        + (" (cursor advanced)" if result.cursor_advanced else "")
    )
    _echo_errors(result.errors)


@app.command()
def process(
    ctx: typer.Context,
    workspace: str = WorkspaceOption,
    batch_size: Optional[int] = typer.Option(None, help="Max items to claim (1-25)"),
) -> None:
    """Execute due queue items for a workspace."""
    result = _run(ctx, lambda engine: engine.process(workspace, batch_size))
    typer.echo(
        f"Processed {result.processed} items: {result.completed} completed, "
        f"{result.failed} failed, {result.cancelled} cancelled, "
        f"{result.retried} retried"
    )
    _echo_errors(result.errors)


@app.command()
def trigger(
    ctx: typer.Context,
    automation_id: str,
    contact_id: str,
    workspace: str = WorkspaceOption,
) -> None:
    """
    Start a run for a contact directly, without waiting for an event.

    Example:
        flowmail trigger welcome-series contact-42
    """
    try:
        result = _run(
            ctx, lambda engine: engine.trigger(workspace, automation_id, contact_id)
        )
    except FlowmailError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Run {result.run_id} queued at step {result.step_id}")


@app.command()
def tick(
    ctx: typer.Context,
    max_workspaces: Optional[int] = typer.Option(None),
    scan_limit: Optional[int] = typer.Option(None),
    batch_size: Optional[int] = typer.Option(None),
) -> None:
    """Scan and process every workspace with running automations."""
    result = _run(
        ctx,
        lambda engine: engine.tick(
            max_workspaces=max_workspaces, scan_limit=scan_limit, batch_size=batch_size
        ),
    )
    typer.echo(json.dumps(result.to_response(), indent=2))


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1"),
    port: int = typer.Option(8000),
) -> None:
    """Serve the runner HTTP API with uvicorn."""
    import uvicorn

    from flowmail.api import create_app

    uvicorn.run(create_app(_engine(ctx)), host=host, port=port)


@runs_app.command("list")
def runs_list(
    ctx: typer.Context,
    workspace: str = WorkspaceOption,
    automation: Optional[str] = typer.Option(None, help="Filter by automation id"),
    limit: Optional[int] = typer.Option(None),
) -> None:
    """
    List runs newest first.

    Example:
        flowmail runs list --automation welcome-series
        # Output: 3f2c...    welcome-series    contact-42    completed
    """
    runs = _run(
        ctx, lambda engine: engine.list_runs(workspace, automation_id=automation, limit=limit)
    )
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(
            f"{run.id}\t{run.automation_id}\t{run.contact_id}\t{run.status.value}"
        )


@runs_app.command("show")
def runs_show(
    ctx: typer.Context, run_id: str, workspace: str = WorkspaceOption
) -> None:
    """Show a run and its queue items."""

    async def _load(engine: AutomationEngine):
        runs = await engine.list_runs(workspace, run_id=run_id, limit=1)
        items = await engine.repository.list_queue(workspace, run_id=run_id)
        return (runs[0] if runs else None), items

    run, items = _run(ctx, _load)
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.id}: {run.status.value} (step {run.current_step_id})")
    if run.last_error:
        typer.echo(f"Last error: {run.last_error}")
    for item in sorted(items, key=lambda i: i.execute_at):
        typer.echo(
            f"- {item.step_id}: {item.status.value} "
            f"at {item.execute_at.isoformat()} (attempts {item.attempts})"
        )


@runs_app.command("cancel")
def runs_cancel(
    ctx: typer.Context, run_id: str, workspace: str = WorkspaceOption
) -> None:
    """Cancel a running run."""
    try:
        cancelled = _run(ctx, lambda engine: engine.cancel_run(workspace, run_id))
    except FlowmailError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Run {run_id} cancelled" if cancelled else f"Run {run_id} already finished")


@automation_app.command("import")
def automation_import(
    ctx: typer.Context, path: Path, workspace: str = WorkspaceOption
) -> None:
    """
    Load automation definitions from a YAML or JSON file.

    The file holds one automation or a list of them, in the builder's format.
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    data = yaml.safe_load(path.read_text()) or []
    if isinstance(data, dict):
        data = [data]

    records = []
    for raw in data:
        record = AutomationRecord.model_validate({**raw, "workspace_id": workspace})
        try:
            load_automation(record)
        except FlowmailError as exc:
            typer.secho(f"Skipping {record.id}: {exc}", fg=typer.colors.RED)
            continue
        records.append(record)

    async def _save(engine: AutomationEngine):
        for record in records:
            await engine.repository.save_automation(record)

    _run(ctx, _save)
    typer.echo(f"Imported {len(records)} automation(s) into {workspace}")


@automation_app.command("list")
def automation_list(ctx: typer.Context, workspace: str = WorkspaceOption) -> None:
    """List automations and their status."""
    automations = _run(ctx, lambda engine: engine.repository.list_automations(workspace))
    if not automations:
        typer.echo("No automations found")
        return
    for automation in automations:
        typer.echo(
            f"{automation.id}\t{automation.status}\t"
            f"{len(automation.steps)} steps\t{automation.name}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
