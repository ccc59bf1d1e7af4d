"""CLI commands for renderpipe using Typer and Rich.

Implements the operator commands:
- render: Store a plan file and render it in-process with live progress
- retry: Re-queue a failed/canceled/quality_failed run and follow it
- status: Show detailed run information and recent log entries
- list: List runs in a table
- qa: Run the quality gate against any video file
- reconcile: Repair runs left 'running' by a crash
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from renderpipe import validate_dependencies
from renderpipe.config import Settings, settings
from renderpipe.db import async_session, init_database, shutdown
from renderpipe.errors import CapabilityError, RunNotFoundError, RunStateError
from renderpipe.orchestrator.recovery import reconcile_on_startup
from renderpipe.orchestrator.runtime import RenderRuntime, build_runtime
from renderpipe.orchestrator.state import is_terminal
from renderpipe.schemas.plan import PlanSpec
from renderpipe.schemas.run import RunSnapshot
from renderpipe.services.run_store import RunStore

app = typer.Typer(name="renderpipe", help="Resumable single-slot render pipeline for narrated vertical videos")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    level = "DEBUG" if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.command()
def render(
    plan_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Plan JSON or YAML file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Use deterministic zero-cost capabilities"),
    fail_step: Optional[str] = typer.Option(None, "--fail-step", help="Dry-run only: inject a failure at this step"),
    step_delay_ms: int = typer.Option(0, "--step-delay-ms", help="Dry-run only: delay before each step"),
):
    """Render an approved plan and follow its progress.

    Runs in-process, so use it when the API server is not running against
    the same database.
    """
    run_settings = _with_dry_run(settings, dry_run, fail_step, step_delay_ms)
    if not run_settings.dry_run.enabled:
        # Fail-fast dependency validation
        try:
            validate_dependencies()
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

    try:
        plan = _load_plan(plan_file)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/red] Invalid plan file: {e}")
        raise typer.Exit(code=1)

    asyncio.run(_render_async(plan, run_settings))


async def _render_async(plan: PlanSpec, run_settings: Settings):
    """Async implementation of render command."""
    await init_database()
    runtime = await _build_or_exit(run_settings)
    runtime.broadcaster.start()
    try:
        await _reconcile_interrupted(runtime)
        plan_id = await runtime.store.create_plan(plan)
        snapshot = await runtime.orchestrator.submit(plan_id)
        console.print(f"[green]Created run:[/green] {snapshot.id} ({len(plan.scenes)} scenes)")
        console.print()
        final = await _follow(runtime, snapshot.id)
    finally:
        await runtime.shutdown()
        await shutdown()
    _report_outcome(final)


@app.command()
def retry(
    run_id: str = typer.Argument(..., help="Run UUID to retry"),
    from_step: Optional[str] = typer.Option(None, "--from-step", help="Recompute from this step (e.g. Video-Encode)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Use deterministic zero-cost capabilities"),
):
    """Retry a failed, quality_failed or canceled run.

    Without --from-step the run resumes at its first incomplete step.
    """
    run_uuid = _parse_uuid(run_id)
    run_settings = _with_dry_run(settings, dry_run, None, 0)
    if not run_settings.dry_run.enabled:
        try:
            validate_dependencies()
        except RuntimeError as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

    asyncio.run(_retry_async(run_uuid, from_step, run_settings))


async def _retry_async(run_uuid: uuid.UUID, from_step: Optional[str], run_settings: Settings):
    """Async implementation of retry command."""
    await init_database()
    runtime = await _build_or_exit(run_settings)
    runtime.broadcaster.start()
    final = None
    try:
        await _reconcile_interrupted(runtime)
        try:
            snapshot = await runtime.orchestrator.retry(run_uuid, from_step=from_step)
        except RunNotFoundError:
            console.print(f"[red]Error:[/red] Run not found: {run_uuid}")
            raise typer.Exit(code=1)
        except RunStateError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1)
        except ValueError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1)

        console.print(f"[yellow]Retrying run:[/yellow] {snapshot.id} (attempt {snapshot.attempt})")
        console.print()
        final = await _follow(runtime, snapshot.id)
    finally:
        await runtime.shutdown()
        await shutdown()
    _report_outcome(final)


async def _follow(runtime: RenderRuntime, run_id: uuid.UUID) -> RunSnapshot:
    """Print log lines and progress until the run reaches a terminal status."""
    subscription = await runtime.broadcaster.subscribe(run_id)
    try:
        with console.status("[bold green]Waiting for the execution slot...") as status:
            async for event in subscription:
                if event.type == "log" and event.log is not None:
                    colour = {"info": "white", "warn": "yellow", "error": "red"}[event.log.level]
                    prefix = f"[dim]{event.log.step}[/dim] " if event.log.step else ""
                    console.print(f"{prefix}[{colour}]{event.log.msg}[/{colour}]")
                elif event.type in ("step", "progress", "state"):
                    progress = event.progress if event.progress is not None else 0
                    step = event.step or (event.snapshot.current_step if event.snapshot else None)
                    status.update(f"[bold green]{progress}%[/bold green] {step or ''}")
                if event.type == "terminal":
                    break
                if event.type == "state" and event.status and is_terminal(event.status):
                    break
    finally:
        runtime.broadcaster.unsubscribe(subscription)
    await runtime.orchestrator.queue.join()
    return await runtime.store.snapshot(run_id)


def _report_outcome(final: Optional[RunSnapshot]) -> None:
    if final is None:
        return
    console.print()
    if final.status == "done":
        console.print("[green]✓[/green] Render complete!")
        final_video = final.artifacts.get("final_video")
        if final_video:
            console.print(f"[green]Output:[/green] {settings.storage.artifacts_dir / final_video}")
        return
    colour = _get_status_color(final.status)
    console.print(f"[{colour}]✗ Run finished as {final.status}[/{colour}]")
    if final.error_message:
        console.print(f"[red]Error:[/red] {final.error_message}")
    console.print(f"[yellow]You can retry with:[/yellow] renderpipe retry {final.id}")
    raise typer.Exit(code=1)


@app.command()
def status(
    run_id: str = typer.Argument(..., help="Run UUID"),
    log_lines: int = typer.Option(10, "--log-lines", "-n", help="Recent log entries to show"),
):
    """Show detailed run status and information."""
    asyncio.run(_status_async(_parse_uuid(run_id), log_lines))


async def _status_async(run_uuid: uuid.UUID, log_lines: int):
    """Async implementation of status command."""
    await init_database()
    store = RunStore(async_session)
    try:
        try:
            snapshot = await store.snapshot(run_uuid)
        except RunNotFoundError:
            console.print(f"[red]Error:[/red] Run not found: {run_uuid}")
            raise typer.Exit(code=1)
    finally:
        await shutdown()

    status_color = _get_status_color(snapshot.status)
    info_lines = [
        f"[bold]ID:[/bold] {snapshot.id}",
        f"[bold]Plan:[/bold] {snapshot.plan_id}",
        f"[bold]Status:[/bold] [{status_color}]{snapshot.status}[/{status_color}]",
        f"[bold]Progress:[/bold] {snapshot.progress}%",
        f"[bold]Current Step:[/bold] {snapshot.current_step or '-'}",
        f"[bold]Completed:[/bold] {', '.join(snapshot.checkpoint) or '-'}",
        f"[bold]Attempt:[/bold] {snapshot.attempt}",
    ]
    if snapshot.created_at:
        info_lines.append(f"[bold]Created:[/bold] {snapshot.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if snapshot.error_message:
        info_lines.append(f"[bold]Error:[/bold] [red]{snapshot.error_message}[/red]")
    if snapshot.failed_step:
        info_lines.append(f"[bold]Failed Step:[/bold] {snapshot.failed_step}")
    qa = snapshot.artifacts.get("qa")
    if qa:
        info_lines.append(f"[bold]QA:[/bold] {'passed' if qa.get('passed') else 'failed'}")

    console.print(Panel("\n".join(info_lines), title="[bold]Run Status[/bold]", border_style="blue"))

    if log_lines > 0 and snapshot.log:
        table = Table(show_header=True, header_style="bold blue")
        table.add_column("Time", style="dim")
        table.add_column("Level")
        table.add_column("Step")
        table.add_column("Message")
        for entry in snapshot.log[-log_lines:]:
            table.add_row(entry.ts.strftime("%H:%M:%S"), entry.level, entry.step or "", entry.msg)
        console.print(table)


@app.command(name="list")
def list_runs(
    status_filter: Optional[str] = typer.Option(None, "--status", "-s", help="Only runs with this status"),
    limit: int = typer.Option(50, "--limit", help="Maximum runs to show"),
):
    """List render runs, newest first."""
    asyncio.run(_list_async(status_filter, limit))


async def _list_async(status_filter: Optional[str], limit: int):
    """Async implementation of list command."""
    await init_database()
    store = RunStore(async_session)
    try:
        runs = await store.list_runs(status=status_filter, limit=limit)
    finally:
        await shutdown()

    if not runs:
        console.print("[yellow]No runs found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Step")
    table.add_column("Attempt", justify="right")
    table.add_column("Created")

    for run in runs:
        status_color = _get_status_color(run.status)
        table.add_row(
            str(run.id)[:8] + "...",
            f"[{status_color}]{run.status}[/{status_color}]",
            f"{run.progress}%",
            run.current_step or "",
            str(run.attempt),
            run.created_at.strftime("%Y-%m-%d %H:%M") if run.created_at else "",
        )

    console.print(table)


@app.command()
def qa(
    video: Path = typer.Argument(..., exists=True, dir_okay=False, help="Video file to check"),
):
    """Run the quality gate (silence, file size, resolution) against a video."""
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    asyncio.run(_qa_async(video))


async def _qa_async(video: Path):
    """Async implementation of qa command."""
    from renderpipe.providers.ffmpeg_encoder import FFmpegInspector
    from renderpipe.services.qa import QAGate

    gate = QAGate(FFmpegInspector(), settings.qa, settings.output, timeout=settings.render.capability_timeout_seconds)
    result = await gate.evaluate(video)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Check")
    table.add_column("Result")
    for name, passed in result.checks.model_dump().items():
        table.add_row(name, "[green]pass[/green]" if passed else "[red]fail[/red]")
    console.print(table)
    if result.details:
        console.print(f"[yellow]Details:[/yellow] {result.details}")
    if not result.passed:
        raise typer.Exit(code=1)


@app.command()
def reconcile(
    resume: bool = typer.Option(False, "--resume", help="Re-queue interrupted runs instead of failing them"),
):
    """Repair runs left 'running' by a crash or hard stop.

    Interrupted runs are marked failed (or re-queued with --resume) and
    leftover partial files are removed. Queued runs are picked up the next
    time the API server starts.
    """
    asyncio.run(_reconcile_async(resume))


async def _reconcile_async(resume: bool):
    """Async implementation of reconcile command."""
    await init_database()
    # Reconciliation never calls a capability, so no provider key is needed
    runtime = build_runtime(_with_dry_run(settings, True, None, 0))
    try:
        report = await reconcile_on_startup(runtime.orchestrator, resume_interrupted=resume, restore_queue=False)
        await runtime.run_log.flush()
    finally:
        await shutdown()

    console.print(f"[green]Demoted to failed:[/green] {len(report.demoted)}")
    console.print(f"[green]Re-queued:[/green] {len(report.requeued)}")
    console.print(f"[green]Waiting in queue:[/green] {len(report.queued)}")
    console.print(f"[green]Partial files removed:[/green] {report.partials_removed}")


async def _build_or_exit(run_settings: Settings) -> RenderRuntime:
    try:
        return build_runtime(run_settings)
    except (CapabilityError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        await shutdown()
        raise typer.Exit(code=1)


async def _reconcile_interrupted(runtime: RenderRuntime):
    """Settle runs a crashed process left 'running' before this one takes the slot.

    Other queued runs stay queued for the API server to pick up.
    """
    report = await reconcile_on_startup(
        runtime.orchestrator,
        resume_interrupted=runtime.settings.recovery.resume_interrupted,
        restore_queue=False,
    )
    if report.demoted:
        console.print(f"[yellow]Marked {len(report.demoted)} interrupted run(s) as failed[/yellow]")
    if report.requeued:
        console.print(f"[yellow]Re-queued {len(report.requeued)} interrupted run(s)[/yellow]")
    return report


def _load_plan(plan_file: Path) -> PlanSpec:
    text = plan_file.read_text()
    if plan_file.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    return PlanSpec.model_validate(data)


def _with_dry_run(base: Settings, enabled: bool, fail_step: Optional[str], step_delay_ms: int) -> Settings:
    if not enabled and not fail_step and not step_delay_ms:
        return base
    dry_run = base.dry_run.model_copy(update={
        "enabled": True,
        "fail_step": fail_step or base.dry_run.fail_step,
        "step_delay_ms": step_delay_ms or base.dry_run.step_delay_ms,
    })
    return base.model_copy(update={"dry_run": dry_run})


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid run UUID: {value}")
        raise typer.Exit(code=1)


def _get_status_color(status: str) -> str:
    """Get Rich color for a run status.

    Color coding:
    - done: green
    - failed / quality_failed: red
    - running: yellow
    - queued / canceled: dim
    """
    if status == "done":
        return "green"
    elif status in ("failed", "quality_failed"):
        return "red"
    elif status == "running":
        return "yellow"
    elif status in ("queued", "canceled"):
        return "dim"
    else:
        return "white"
