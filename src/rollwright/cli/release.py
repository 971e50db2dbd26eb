"""Release CLI commands.

This module provides the deploy, release, rollback, product-release, tags and
status commands. Each command builds its pipeline through the runtime, executes it
and exits with the run's exit code. Ctrl+C cancels the active runs.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Annotated, Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from rollwright.errors import ReleaseError
from rollwright.models import PipelineRun, RunStatus, ServiceStatus, StepStatus
from rollwright.orchestrator.product import ProductReleaseReport
from rollwright.runtime import Runtime, build_runtime

console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.ROLLBACK_FAILED: "bold red",
    RunStatus.ROLLED_BACK: "yellow",
    RunStatus.TIMED_OUT: "magenta",
    RunStatus.CANCELLED: "dim",
}

STEP_STYLES = {
    StepStatus.SUCCEEDED: "green",
    StepStatus.FAILED: "red",
    StepStatus.SKIPPED: "dim",
    StepStatus.RUNNING: "cyan",
    StepStatus.PENDING: "dim",
}


def _styled(value: str, style: str | None) -> str:
    return f"[{style}]{value}[/{style}]" if style else value


def _get_runtime() -> Runtime:
    from rollwright.main import get_app_context

    ctx = get_app_context()
    return build_runtime(ctx.config)


def _install_cancel_handler(runtime: Runtime) -> None:
    loop = asyncio.get_running_loop()

    def cancel() -> None:
        console.print()
        console.print("[yellow]Interrupt received. Cancelling active runs...[/yellow]")
        runtime.orchestrator.cancel_all()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel)
        except NotImplementedError:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(cancel))


def _execute(runtime: Runtime, work: Callable[[], Awaitable[T]]) -> T:
    async def main() -> T:
        _install_cancel_handler(runtime)
        try:
            return await work()
        finally:
            await runtime.close()

    try:
        return asyncio.run(main())
    except ReleaseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


def _build(factory: Callable[[], T]) -> T:
    try:
        return factory()
    except ReleaseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)


def render_run(run: PipelineRun, title: str | None = None) -> None:
    """Print the step table and summary panel of a run."""
    table = Table(title=title or f"{run.name} {run.target.key}")
    table.add_column("Step", style="bold cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")

    for step in run.steps:
        duration = step.duration_seconds
        table.add_row(
            step.name,
            _styled(step.status.value, STEP_STYLES.get(step.status)),
            f"{step.attempts}/{step.max_attempts}",
            f"{duration:.1f}s" if duration is not None else "-",
            step.error or "",
        )
    console.print(table)

    lines = [
        f"[bold]Run:[/bold] {run.id}",
        f"[bold]Status:[/bold] {_styled(run.status.value, STATUS_STYLES.get(run.status))}",
        f"[bold]Tag:[/bold] {run.deploy_tag or '-'}",
        f"[bold]Exit code:[/bold] {run.exit_code}",
    ]
    if run.manifest_update is not None:
        update = run.manifest_update
        lines.append(
            f"[bold]Manifest:[/bold] {update.previous_tag or '-'} -> {update.new_tag}"
            f" ({'changed' if update.changed else 'unchanged'})"
        )
    if run.partial:
        lines.append("[yellow]Partial: changes were applied before the failure[/yellow]")
    if run.error:
        lines.append(f"[bold]Error:[/bold] {run.error}")
    if run.rollout is not None and run.rollout.diagnostics is not None:
        lines.append(f"[bold]Diagnostics:[/bold] {run.rollout.diagnostics.summary}")

    console.print(
        Panel(
            "\n".join(lines),
            title=f"{run.target.service} -> {run.target.environment}",
            border_style=STATUS_STYLES.get(run.status, "cyan"),
        )
    )

    if run.rollback_run is not None:
        render_run(run.rollback_run, title=f"rollback {run.target.key}")


def render_report(report: ProductReleaseReport) -> None:
    """Print one row per service and environment of a product release."""
    table = Table(title="Product release")
    table.add_column("Environment", style="bold cyan")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Exit", justify="right")
    table.add_column("Detail")

    for outcome in report.outcomes:
        if outcome.skipped:
            status = _styled("skipped", "dim")
        elif outcome.status is not None:
            status = _styled(outcome.status.value, STATUS_STYLES.get(outcome.status))
        else:
            status = "-"
        table.add_row(
            outcome.environment,
            outcome.service,
            status,
            str(outcome.exit_code) if outcome.exit_code is not None else "-",
            outcome.reason or "",
        )
    console.print(table)
    console.print(f"[bold]Exit code:[/bold] {report.exit_code}")


ShaOption = Annotated[
    Optional[str],
    typer.Option("--sha", help="Commit SHA to release (defaults to RELEASE_GIT_SHA, GIT_SHA or HEAD)"),
]
ImageOption = Annotated[
    Optional[str],
    typer.Option("--image", "-i", help="Local image reference to push"),
]


def deploy(
    service: Annotated[str, typer.Argument(help="Service to deploy")],
    environment: Annotated[str, typer.Argument(help="Target environment")],
    sha: ShaOption = None,
    image: ImageOption = None,
) -> None:
    """Push, update the manifest, reconcile and watch the rollout of one service."""
    runtime = _get_runtime()
    run = _build(lambda: runtime.deploy_run(service, environment, sha, image))

    console.print(f"[bold cyan]Deploying[/bold cyan] {service} -> {environment} ({run.tags.immutable.value})")
    run = _execute(runtime, lambda: runtime.orchestrator.execute(run))
    render_run(run)
    raise typer.Exit(code=run.exit_code)


def release(
    service: Annotated[str, typer.Argument(help="Service to release")],
    environment: Annotated[str, typer.Argument(help="Target environment")],
    sha: ShaOption = None,
    image: ImageOption = None,
) -> None:
    """Run the full release pipeline, including configured hooks."""
    runtime = _get_runtime()
    run = _build(lambda: runtime.release_run(service, environment, sha, image))

    console.print(f"[bold cyan]Releasing[/bold cyan] {service} -> {environment} ({run.tags.immutable.value})")
    run = _execute(runtime, lambda: runtime.orchestrator.execute(run))
    render_run(run)
    raise typer.Exit(code=run.exit_code)


def rollback(
    service: Annotated[str, typer.Argument(help="Service to roll back")],
    environment: Annotated[str, typer.Argument(help="Target environment")],
    reason: Annotated[
        str,
        typer.Option("--reason", "-r", help="Why the rollback is happening"),
    ] = "operator requested rollback",
) -> None:
    """Restore the tag that preceded the last recorded release."""
    runtime = _get_runtime()
    plan = _build(lambda: runtime.rollback_plan(service, environment, reason))
    target = runtime.config.target_for(service, environment)

    console.print(
        f"[bold yellow]Rolling back[/bold yellow] {target.key}: "
        f"{plan.source_update.new_tag} -> {plan.tag_to_restore}"
    )
    run = _execute(runtime, lambda: runtime.orchestrator.rollback_controller.rollback(target, plan))
    render_run(run)
    raise typer.Exit(code=run.exit_code)


def product_release(
    sha: ShaOption = None,
    environments: Annotated[
        Optional[list[str]],
        typer.Option("--environment", "-e", help="Environment to promote through (repeatable, in order)"),
    ] = None,
    services: Annotated[
        Optional[list[str]],
        typer.Option("--service", "-s", help="Service to release (repeatable, default: all)"),
    ] = None,
    image_template: Annotated[
        Optional[str],
        typer.Option("--image-template", help="Local image reference, may use {service} and {tag}"),
    ] = None,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", min=1, help="Maximum concurrent service runs"),
    ] = None,
    fail_fast: Annotated[
        Optional[bool],
        typer.Option("--fail-fast/--no-fail-fast", help="Cancel sibling services after a failure"),
    ] = None,
) -> None:
    """Release every service, promoting environment by environment."""
    runtime = _get_runtime()
    config = runtime.config
    selected = services or [s.name for s in config.services]
    targets = environments or config.pipeline.environments
    if not selected:
        console.print("[red]No services configured[/red]")
        raise typer.Exit(code=1)

    product = _build(lambda: runtime.product_release(sha, image_template, concurrency, fail_fast))

    console.print(
        Panel(
            f"[bold]Services:[/bold] {', '.join(selected)}\n"
            f"[bold]Environments:[/bold] {' -> '.join(targets)}\n"
            f"[bold]Concurrency:[/bold] {product.concurrency}\n"
            f"[bold]Fail fast:[/bold] {product.fail_fast}",
            title="Product release",
            border_style="cyan",
        )
    )
    report = _execute(runtime, lambda: product.execute(selected, targets))
    render_report(report)
    raise typer.Exit(code=report.exit_code)


def tags(
    service: Annotated[str, typer.Argument(help="Service name")],
    sha: ShaOption = None,
) -> None:
    """Show the tags a release of ``service`` would push."""
    runtime = _get_runtime()
    tag_set = _build(lambda: runtime.tags_for(service, sha))

    table = Table(title=f"Tags for {service}", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Repository", runtime.config.registry.coordinates.repository_for(service))
    table.add_row("Immutable", tag_set.immutable.value)
    table.add_row("Floating", tag_set.floating.value)
    console.print(table)


def render_status(status: ServiceStatus) -> None:
    """Print the deployed tag, recent releases and the rollout observation."""
    lines = [
        f"[bold]Manifest tag:[/bold] {status.manifest_tag or '-'}",
        f"[bold]Revision:[/bold] {status.revision[:12]}",
    ]
    observation = status.rollout
    if observation is not None:
        state = _styled("current", "green") if status.rollout_current else _styled("stale", "yellow")
        lines.append(
            f"[bold]Replicas:[/bold] {observation.ready}/{observation.desired} ready, "
            f"{observation.updated if observation.updated is not None else '-'} updated ({state})"
        )
    else:
        lines.append(f"[bold]Rollout:[/bold] [red]unavailable[/red] {status.rollout_error or ''}")
    console.print(Panel("\n".join(lines), title=status.target_key, border_style="cyan"))

    if observation is not None and observation.pods:
        pods = Table(title="Pods")
        pods.add_column("Pod", style="bold cyan")
        pods.add_column("Ready")
        pods.add_column("Tag")
        pods.add_column("Restarts", justify="right")
        pods.add_column("Reason")
        for pod in observation.pods:
            pods.add_row(
                pod.name,
                _styled("yes", "green") if pod.ready else _styled("no", "red"),
                pod.image_tag or "-",
                str(pod.restart_count),
                pod.reason or "",
            )
        console.print(pods)

    if not status.releases:
        console.print("[dim]No recorded releases[/dim]")
        return
    history = Table(title="Recent releases")
    history.add_column("Origin", style="bold cyan")
    history.add_column("Tag")
    history.add_column("Commit")
    history.add_column("Healthy")
    for entry in reversed(status.releases):
        update = entry.update
        if entry.healthy is None:
            healthy = "-"
        else:
            healthy = _styled("yes", "green") if entry.healthy else _styled("no", "red")
        history.add_row(
            entry.origin.value,
            f"{update.previous_tag or '-'} -> {update.new_tag}",
            (update.commit_id or "")[:8],
            healthy,
        )
    console.print(history)


def status(
    service: Annotated[str, typer.Argument(help="Service name")],
    environment: Annotated[str, typer.Argument(help="Environment")],
    history: Annotated[
        int,
        typer.Option("--history", "-n", min=0, help="Number of recorded releases to show"),
    ] = 5,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the status as JSON"),
    ] = False,
) -> None:
    """Show the tag a service runs, its recent releases and its rollout."""
    runtime = _get_runtime()
    report = _execute(runtime, lambda: runtime.status(service, environment, history))

    if as_json:
        console.print_json(report.model_dump_json())
    else:
        render_status(report)
