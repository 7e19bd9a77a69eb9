"""Command-line entry point: plan, run and aggregate convergence agents."""

import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from convergence import __version__
from convergence.app.config import settings
from convergence.app.models.agent import AgentDescriptor, load_descriptors
from convergence.errors import ConvergenceError
from convergence.git.worktree_manager import WorkspaceManager
from convergence.orchestrator.commit_protocol import CommitProtocol
from convergence.orchestrator.cycle_scheduler import (
    CycleScheduler,
    RunResult,
    SchedulerOutcome,
)
from convergence.orchestrator.dependency_graph import DependencyGraph
from convergence.orchestrator.executor import CommandExecutor
from convergence.orchestrator.integration_aggregator import IntegrationAggregator
from convergence.store.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


def _descriptors() -> list[AgentDescriptor]:
    try:
        return load_descriptors(settings.agents_file)
    except ConvergenceError as e:
        raise click.ClickException(str(e))


def _descriptor(name: str) -> AgentDescriptor:
    for descriptor in _descriptors():
        if descriptor.name == name:
            return descriptor
    raise click.ClickException(f"Unknown agent: {name}")


@click.group()
@click.version_option(version=__version__, prog_name="convergence")
@click.option("--shared-dir", type=click.Path(path_type=Path), default=None,
              help="Shared coordination directory.")
@click.option("--agents-file", type=click.Path(path_type=Path), default=None,
              help="Agent descriptor file (YAML or JSON).")
@click.option("--project-root", type=click.Path(path_type=Path), default=None,
              help="Repository holding the integration branch.")
@click.option("--log-level", default=None, help="Logging level.")
def main(
    shared_dir: Optional[Path],
    agents_file: Optional[Path],
    project_root: Optional[Path],
    log_level: Optional[str]
) -> None:
    """Run agents through bounded cycles until their tests converge."""
    if shared_dir is not None:
        settings.shared_dir = shared_dir
    if agents_file is not None:
        settings.agents_file = agents_file
    if project_root is not None:
        settings.project_root = project_root
        settings.worktrees_dir = project_root / ".worktrees"
    if log_level is not None:
        settings.log_level = log_level.upper()

    logging.basicConfig(
        level="DEBUG" if settings.debug else settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@main.command()
def plan() -> None:
    """Validate the agent graph and show launch order."""
    graph = DependencyGraph()
    try:
        for descriptor in _descriptors():
            graph.add_node(descriptor)
        levels = graph.get_execution_order()
        path, budget = graph.get_critical_path()
    except ConvergenceError as e:
        raise click.ClickException(str(e))

    for number, level in enumerate(levels, start=1):
        click.echo(f"Level {number}: {', '.join(level)}")
    if path:
        click.echo(f"Critical path: {' -> '.join(path)} ({budget} cycles max)")


@main.command()
@click.option("--base-branch", default=None, help="Branch agent worktrees fork from.")
def prepare(base_branch: Optional[str]) -> None:
    """Create (or reuse) a worktree for every agent without an explicit workspace."""
    workspaces = WorkspaceManager(settings.project_root, settings.worktrees_dir)
    ArtifactStore(settings.shared_dir)
    for descriptor in _descriptors():
        if descriptor.workspace is not None:
            click.echo(f"{descriptor.name}: {descriptor.workspace} (explicit)")
            continue
        path = workspaces.ensure_worktree(
            descriptor.name, base_branch or settings.integration_branch
        )
        click.echo(f"{descriptor.name}: {path}")


async def _run_agent(
    scheduler: CycleScheduler,
    fresh_start: bool,
    hold_maintenance: bool
) -> RunResult:
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, task.cancel)

    result = await scheduler.run(fresh_start=fresh_start)
    if hold_maintenance and result.outcome == SchedulerOutcome.MAINTENANCE:
        await scheduler.hold_maintenance()
    return result


@main.command("run-agent")
@click.argument("name")
@click.option("--fresh-start", is_flag=True, help="Discard persisted status and cycle log.")
@click.option("--hold-maintenance", is_flag=True,
              help="Keep heartbeating after reaching maintenance mode.")
def run_agent(name: str, fresh_start: bool, hold_maintenance: bool) -> None:
    """
    Run one agent until it restarts or finishes.

    Exits with the restart code to ask the runtime for a fresh process,
    0 when the agent is done and 1 when it stopped in error.
    """
    descriptor = _descriptor(name)
    store = ArtifactStore(settings.shared_dir)
    workspaces = WorkspaceManager(settings.project_root, settings.worktrees_dir)

    workspace = descriptor.resolve_workspace(settings.worktrees_dir)
    if descriptor.workspace is None and not workspace.exists():
        workspace = workspaces.ensure_worktree(name, settings.integration_branch)

    scheduler = CycleScheduler(
        descriptor=descriptor,
        store=store,
        workspaces=workspaces,
        executor=CommandExecutor(descriptor.executor_command),
        commits=CommitProtocol(workspaces),
        workspace=workspace,
    )

    try:
        result = asyncio.run(_run_agent(scheduler, fresh_start, hold_maintenance))
    except asyncio.CancelledError:
        logger.warning(f"{name} interrupted; state is resumable")
        sys.exit(settings.restart_exit_code)
    except ConvergenceError as e:
        logger.error(f"{name} failed to run: {e}")
        sys.exit(1)

    click.echo(
        f"{name}: {result.outcome.value} after cycle {result.last_cycle}"
        + (f" ({result.reason})" if result.reason else "")
    )
    sys.exit(result.exit_code)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
def status(as_json: bool) -> None:
    """Show every agent's state, pass rate and health."""
    aggregator = IntegrationAggregator(ArtifactStore(settings.shared_dir), _descriptors())
    rows = aggregator.overview()
    alerts = aggregator.live_alerts()

    if as_json:
        click.echo(json.dumps({
            "agents": [row.model_dump(mode="json") for row in rows],
            "alerts": [alert.model_dump() for alert in alerts],
        }, indent=2))
        return

    for row in rows:
        state = row.state.value if row.state else "-"
        line = (
            f"{row.agent:<20} {state:<18} cycle {row.cycle}/{row.max_cycles}  "
            f"{row.pass_rate:6.1f}% (target {row.target_pass_rate:g}%)  "
            f"{row.health.value}"
        )
        if row.blocked_on:
            line += f"  blocked on {', '.join(row.blocked_on)}"
        click.echo(line)

    for alert in alerts:
        click.echo(f"[{alert.level}] {alert.agent}: {alert.message}")


@main.command()
@click.argument("name")
def cancel(name: str) -> None:
    """Ask an agent to stop after its current cycle."""
    _descriptor(name)
    ArtifactStore(settings.shared_dir).request_cancel(name)
    click.echo(f"Cancellation requested for {name}")


@main.command()
@click.option("--wait/--no-wait", default=False, help="Wait for every agent to finish.")
@click.option("--timeout", type=float, default=None, help="Seconds to wait (with --wait).")
@click.option("--merge", is_flag=True, help="Merge agent branches into the integration branch.")
@click.option("--commit/--no-commit", default=True, help="Record a final integration commit.")
def aggregate(wait: bool, timeout: Optional[float], merge: bool, commit: bool) -> None:
    """Write the integration report once every agent is terminal."""
    store = ArtifactStore(settings.shared_dir)
    commits = None
    if commit:
        commits = CommitProtocol(
            WorkspaceManager(settings.project_root, settings.worktrees_dir)
        )
    aggregator = IntegrationAggregator(
        store, _descriptors(), commits=commits, merge_branches=merge
    )

    async def _aggregate():
        if wait:
            await aggregator.wait_for_barrier(timeout=timeout)
        return await aggregator.aggregate()

    try:
        report = asyncio.run(_aggregate())
    except ConvergenceError as e:
        raise click.ClickException(str(e))

    click.echo(f"Overall pass rate: {report.overall_pass_rate}%")
    for a in report.attribution:
        flag = "  FLAGGED" if a.flagged else ""
        click.echo(
            f"  {a.agent}: {a.pass_rate}% ({a.passing_tests}/{a.total_tests}), "
            f"{a.cycles_used} cycles, {a.state.value}{flag}"
        )
    if report.commit_id:
        click.echo(f"Integration commit: {report.commit_id}")


@main.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Serve the status API."""
    import uvicorn

    uvicorn.run("convergence.app.main:app", host=host, port=port)


if __name__ == "__main__":
    main()
