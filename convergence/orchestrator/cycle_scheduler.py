"""Cycle scheduler: drives one agent through bounded convergence cycles."""

import asyncio
import contextlib
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import git as gitpython
from pydantic import BaseModel

from convergence.app.config import settings
from convergence.app.models.agent import AgentDescriptor, AgentState, StatusRecord
from convergence.app.models.cycle import CycleRecord, Decision, TestMetrics, utcnow
from convergence.app.models.handoff import FilesChanged, HandoffArtifact
from convergence.errors import (
    ArtifactError,
    CommitFailure,
    DependencyTimeout,
    ExecutionFailure,
    OperatorCancelled,
    TestHarnessFailure,
)
from convergence.git.worktree_manager import WorkspaceManager
from convergence.orchestrator.commit_protocol import CommitProtocol
from convergence.orchestrator.dependency_gate import DependencyGate
from convergence.orchestrator.executor import TaskContext, TaskExecutor
from convergence.orchestrator.restart_policy import policy_for
from convergence.quality.test_runner import TestEvaluator
from convergence.store.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)

# git's well-known empty tree, used as diff base when the agent started unborn
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


class SchedulerOutcome(str, Enum):
    """How a scheduler process ended."""
    RESTART = "restart"
    MAINTENANCE = "maintenance"
    TERMINATED = "terminated"
    ERROR = "error"


_OUTCOME_BY_STATE = {
    AgentState.MAINTENANCE: SchedulerOutcome.MAINTENANCE,
    AgentState.TERMINATED: SchedulerOutcome.TERMINATED,
    AgentState.ERROR: SchedulerOutcome.ERROR,
}


class RunResult(BaseModel):
    """Result of one scheduler process lifetime."""
    agent: str
    outcome: SchedulerOutcome
    exit_code: int
    last_cycle: int = 0
    cycles_run: int = 0
    reason: Optional[str] = None


class CycleScheduler:
    """
    Runs one agent's cycles against its workspace.

    All state needed to resume lives in the artifact store: the StatusRecord
    and the append-only cycle log. A process may exit after any cycle (RESTART)
    and the next invocation continues with the following cycle index.
    """

    def __init__(
        self,
        descriptor: AgentDescriptor,
        store: ArtifactStore,
        workspaces: WorkspaceManager,
        executor: TaskExecutor,
        evaluator: Optional[TestEvaluator] = None,
        gate: Optional[DependencyGate] = None,
        commits: Optional[CommitProtocol] = None,
        workspace: Optional[Path] = None,
        heartbeat_interval: Optional[float] = None,
        restart_exit_code: Optional[int] = None,
        debug: Optional[bool] = None
    ):
        """
        Initialize scheduler.

        Args:
            descriptor: Agent launch configuration
            store: Shared artifact store
            workspaces: Workspace manager for snapshots and commits
            executor: Work performed in each cycle
            evaluator: Test evaluator (default: TestEvaluator())
            gate: Dependency gate (default: polls the same store)
            commits: Commit protocol (default: wraps workspaces)
            workspace: Agent workspace (default: descriptor's worktree)
            heartbeat_interval: Seconds between status heartbeats
            restart_exit_code: Exit code that asks the runtime to re-invoke
            debug: Ask the executor for analysis only
        """
        self.descriptor = descriptor
        self.name = descriptor.name
        self.store = store
        self.workspaces = workspaces
        self.executor = executor
        self.evaluator = evaluator or TestEvaluator()
        self.gate = gate or DependencyGate(store)
        self.commits = commits or CommitProtocol(workspaces)
        self.workspace = Path(
            workspace or descriptor.resolve_workspace(settings.worktrees_dir)
        )
        self.heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.heartbeat_interval
        )
        self.restart_exit_code = (
            restart_exit_code
            if restart_exit_code is not None
            else settings.restart_exit_code
        )
        self.debug = settings.debug if debug is None else debug
        self.policy = policy_for(descriptor.restart_mode)

        self.status: Optional[StatusRecord] = None
        self.cycles_run = 0

    async def run(self, fresh_start: bool = False) -> RunResult:
        """
        Run cycles until the agent restarts or reaches a terminal state.

        Args:
            fresh_start: Clear persisted status and cycle log first

        Returns:
            RunResult with the outcome and the exit code for the runtime

        Raises:
            ArtifactError: If persisted state is unreadable, or a fresh start
                is requested after the handoff was published
        """
        if fresh_start:
            self.store.reset_agent(self.name)

        self.status = await self._load_status()
        if self.status.state.is_terminal:
            logger.info(
                f"{self.name} already {self.status.state.value}; nothing to do"
            )
            return self._result(_OUTCOME_BY_STATE[self.status.state])

        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            return await self._run_cycles()
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def hold_maintenance(self, poll_interval: float = 5.0) -> None:
        """
        Keep heartbeating an agent in maintenance until cancelled.

        Returns when the cancel marker appears or the task is cancelled.
        """
        if self.status is None:
            self.status = await self._load_status()
        logger.info(f"{self.name} holding in maintenance mode")
        heartbeat = asyncio.create_task(self._heartbeat())
        try:
            while not self.store.cancel_requested(self.name):
                await asyncio.sleep(poll_interval)
            logger.info(f"{self.name} released from maintenance by operator")
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    # Startup

    async def _load_status(self) -> StatusRecord:
        status = self.store.read_status(self.name)
        handoff = self.store.read_handoff(self.name)

        if status is None:
            base_commit = await asyncio.to_thread(
                self._safe_head_commit
            )
            status = StatusRecord(
                agent=self.name,
                restart_mode=self.descriptor.restart_mode,
                started_at=utcnow(),
                base_commit=base_commit,
            )
            self.store.write_status(status)
            logger.info(f"Initialized status for {self.name} at {base_commit}")

        if handoff is not None and not status.state.is_terminal:
            # Crashed between publishing the handoff and the final status write
            logger.warning(
                f"{self.name} has a handoff but status {status.state.value}; "
                f"reconciling to {handoff.final_state.value}"
            )
            status.state = handoff.final_state
            status.reason = handoff.reason
            status.blocked_on = []
            status.touch()
            self.store.write_status(status)

        # The mode chosen at first start holds for the agent's whole run
        if status.restart_mode is None:
            status.restart_mode = self.descriptor.restart_mode
            self.store.write_status(status)
        elif status.restart_mode != self.descriptor.restart_mode:
            logger.warning(
                f"{self.name} descriptor now says {self.descriptor.restart_mode.value} "
                f"but the agent started as {status.restart_mode.value}; "
                f"keeping {status.restart_mode.value}"
            )
        self.policy = policy_for(status.restart_mode)

        return status

    def _safe_head_commit(self) -> Optional[str]:
        try:
            return self.workspaces.head_commit(self.workspace)
        except (gitpython.GitError, OSError) as e:
            logger.warning(f"Cannot read HEAD of {self.workspace}: {e}")
            return None

    # Main loop

    async def _run_cycles(self) -> RunResult:
        if self.status.state.is_mid_cycle:
            result = await self._recover_interrupted_cycle()
            if result is not None:
                return result

        last = self.store.last_cycle(self.name)
        if last is not None:
            # A previous process may have died after recording its decision
            result = await self._apply_decision(last, resumed=True)
            if result is not None:
                return result

        while True:
            cycle_index = (last.cycle_index if last else 0) + 1
            if cycle_index > self.descriptor.max_cycles:
                return await self._finalize(
                    AgentState.TERMINATED, "cycle budget exhausted"
                )

            if self.store.cancel_requested(self.name):
                return await self._finalize(
                    AgentState.TERMINATED, "operator_cancelled"
                )

            try:
                await self._await_dependencies()
            except DependencyTimeout as e:
                logger.error(f"{self.name}: {e}")
                return await self._finalize(AgentState.ERROR, "dependency_timeout")
            except OperatorCancelled:
                logger.info(f"{self.name} cancelled while waiting on dependencies")
                return await self._finalize(
                    AgentState.TERMINATED, "operator_cancelled"
                )

            last = await self._run_cycle(cycle_index)
            self.cycles_run += 1

            if last.decision != Decision.ERROR and self.store.cancel_requested(self.name):
                return await self._finalize(
                    AgentState.TERMINATED, "operator_cancelled"
                )

            result = await self._apply_decision(last, resumed=False)
            if result is not None:
                return result

    async def _apply_decision(
        self,
        record: CycleRecord,
        resumed: bool
    ) -> Optional[RunResult]:
        """
        Carry out a recorded decision.

        Returns:
            RunResult if the decision ends this process, None to keep cycling
        """
        if record.decision == Decision.CONTINUE:
            return None
        if record.decision == Decision.RESTART:
            if resumed:
                return None
            logger.info(
                f"{self.name} restarting after cycle {record.cycle_index} "
                f"(exit {self.restart_exit_code})"
            )
            return self._result(SchedulerOutcome.RESTART, reason=record.reason)
        if record.decision == Decision.MAINTAIN:
            return await self._finalize(AgentState.MAINTENANCE, record.reason)
        if record.decision == Decision.DONE:
            return await self._finalize(AgentState.TERMINATED, record.reason)
        return await self._finalize(AgentState.ERROR, record.error)

    async def _recover_interrupted_cycle(self) -> Optional[RunResult]:
        """Preserve whatever an interrupted cycle left in the workspace."""
        logger.warning(
            f"{self.name} resumed from interrupted {self.status.state.value} "
            f"in cycle {self.status.cycle}; preserving leftover work"
        )
        try:
            await self.commits.preserve(self.name, self.workspace, self.status.cycle)
        except CommitFailure as e:
            logger.error(f"Recovery commit for {self.name} failed: {e}")
            return await self._finalize(AgentState.ERROR, "commit_failure")
        self._set_state(AgentState.INIT, reason="recovered interrupted cycle")
        return None

    async def _await_dependencies(self) -> None:
        dependencies = self.descriptor.dependencies
        if not dependencies:
            return

        def on_blocked(missing: list[str]) -> None:
            if self.store.cancel_requested(self.name):
                raise OperatorCancelled(f"{self.name} cancelled by operator")
            if (
                self.status.state != AgentState.AWAIT_DEPENDENCIES
                or self.status.blocked_on != missing
            ):
                self._set_state(
                    AgentState.AWAIT_DEPENDENCIES,
                    blocked_on=missing,
                    reason=f"waiting on {', '.join(missing)}",
                )

        await self.gate.wait_for(self.name, dependencies, on_blocked=on_blocked)
        self.status.blocked_on = []

    async def _run_cycle(self, cycle_index: int) -> CycleRecord:
        """Execute, evaluate, preserve and decide one cycle."""
        start_time = utcnow()
        error: Optional[str] = None
        metrics: Optional[TestMetrics] = None

        logger.info(
            f"{self.name} starting cycle {cycle_index}/{self.descriptor.max_cycles}"
        )
        self._set_state(AgentState.EXECUTING, cycle=cycle_index, reason=None)

        context = TaskContext(
            agent=self.name,
            cycle=cycle_index,
            max_cycles=self.descriptor.max_cycles,
            target=self.descriptor.target_pass_rate,
            task=self.descriptor.task,
            last_metrics=self.status.last_metrics,
            last_test_output=self.store.read_test_output(self.name),
            feedback=self.store.read_feedback(self.name),
            debug=self.debug,
        )
        try:
            await self.executor.execute(self.workspace, context)
        except ExecutionFailure as e:
            logger.warning(f"{self.name} cycle {cycle_index} execution failed: {e}")
            error = "execution_failure"

        if error is None:
            self._set_state(AgentState.EVALUATING)
            try:
                metrics = await self.evaluator.run(
                    self.descriptor.test_command, cwd=self.workspace
                )
            except TestHarnessFailure as e:
                logger.warning(f"{self.name} cycle {cycle_index}: {e}")
                error = f"harness_{e.reason}"
            finally:
                self.store.write_test_output(self.name, self.evaluator.last_output)

        self._set_state(AgentState.PRESERVING)
        try:
            commit_id = await self.commits.preserve(
                self.name, self.workspace, cycle_index, metrics
            )
        except CommitFailure as e:
            logger.error(f"{self.name} cycle {cycle_index} could not be preserved: {e}")
            record = CycleRecord(
                agent=self.name,
                cycle_index=cycle_index,
                start_time=start_time,
                end_time=utcnow(),
                test_metrics=metrics,
                decision=Decision.ERROR,
                reason=str(e),
                error="commit_failure",
            )
            self.store.append_cycle(record)
            return record

        pass_rate = metrics.pass_rate if metrics else 0.0
        self._set_state(
            AgentState.DECIDING,
            pass_rate=pass_rate,
            last_metrics=metrics or self.status.last_metrics,
        )

        target = self.descriptor.target_pass_rate
        decision = self.policy.decide(
            cycle_index, self.descriptor.max_cycles, pass_rate, target
        )
        reason = self.policy.explain(
            decision, cycle_index, self.descriptor.max_cycles, pass_rate, target
        )
        if error:
            reason = f"{error}; {reason}"

        record = CycleRecord(
            agent=self.name,
            cycle_index=cycle_index,
            start_time=start_time,
            end_time=utcnow(),
            test_metrics=metrics,
            commit_id=commit_id,
            decision=decision,
            reason=reason,
            error=error,
        )
        self.store.append_cycle(record)
        self._set_state(AgentState.DECIDING, last_decision=decision, reason=reason)

        logger.info(
            f"{self.name} cycle {cycle_index}: {pass_rate:.1f}% -> "
            f"{decision.value} ({reason})"
        )
        return record

    # Terminal states

    async def _finalize(self, state: AgentState, reason: Optional[str]) -> RunResult:
        """Publish the handoff, then record the terminal status."""
        cycles = self.store.read_cycles(self.name)
        metrics = self.status.last_metrics
        files_changed = await asyncio.to_thread(self._files_changed)

        handoff = HandoffArtifact(
            agent=self.name,
            start_time=self.status.started_at or (
                cycles[0].start_time if cycles else utcnow()
            ),
            end_time=utcnow(),
            cycles_used=cycles[-1].cycle_index if cycles else 0,
            test_metrics=metrics,
            files_changed=files_changed,
            recommendations=self._recommendations(state, reason, metrics),
            final_state=state,
            reason=reason,
        )
        try:
            self.store.write_handoff(handoff)
        except ArtifactError:
            existing = self.store.read_handoff(self.name)
            logger.warning(
                f"Handoff for {self.name} already published "
                f"({existing.final_state.value if existing else 'unreadable'})"
            )
            if existing is not None:
                handoff = existing
                state = existing.final_state
                reason = existing.reason

        pass_rate = metrics.pass_rate if metrics else 0.0
        if state != AgentState.MAINTENANCE and pass_rate < self.descriptor.target_pass_rate:
            self.store.write_blocker(self.name, {
                "agent": self.name,
                "state": state.value,
                "reason": reason,
                "pass_rate": pass_rate,
                "target_pass_rate": self.descriptor.target_pass_rate,
                "cycles_used": handoff.cycles_used,
                "created_at": utcnow().isoformat(),
                "recommendations": handoff.recommendations,
            })

        self._set_state(state, reason=reason, blocked_on=[])
        logger.info(
            f"{self.name} finished in {state.value} after "
            f"{handoff.cycles_used} cycles ({reason})"
        )
        return self._result(_OUTCOME_BY_STATE[state], reason=reason)

    def _files_changed(self) -> FilesChanged:
        try:
            if self.workspaces.head_commit(self.workspace) is None:
                return FilesChanged()
            snapshot = self.workspaces.diff_stats(
                self.workspace, base=self.status.base_commit or EMPTY_TREE
            )
        except (gitpython.GitError, OSError) as e:
            logger.warning(f"Cannot summarize changes for {self.name}: {e}")
            return FilesChanged()
        return FilesChanged.from_snapshot(snapshot)

    def _recommendations(
        self,
        state: AgentState,
        reason: Optional[str],
        metrics: Optional[TestMetrics]
    ) -> str:
        target = self.descriptor.target_pass_rate
        if state == AgentState.ERROR:
            return f"Agent stopped on {reason}; inspect its logs before relying on this work."
        if metrics is None:
            return "No test results were recorded; verify the test command."
        if metrics.pass_rate >= target:
            return (
                f"Target met ({metrics.pass_rate:.1f}% >= {target:g}%); "
                "ready for integration."
            )
        return (
            f"{metrics.failing} of {metrics.total} tests still failing "
            f"({metrics.pass_rate:.1f}% < {target:g}%); "
            "review the failures before integrating."
        )

    # Status helpers

    def _set_state(self, state: AgentState, **fields) -> None:
        self.status.state = state
        for key, value in fields.items():
            setattr(self.status, key, value)
        self.status.touch()
        self.store.write_status(self.status)

    async def _heartbeat(self) -> None:
        while True:
            self.status.heartbeat = utcnow()
            try:
                self.store.write_status(self.status)
            except ArtifactError as e:
                logger.warning(f"Heartbeat write failed for {self.name}: {e}")
            await asyncio.sleep(self.heartbeat_interval)

    def _result(
        self,
        outcome: SchedulerOutcome,
        reason: Optional[str] = None
    ) -> RunResult:
        if outcome == SchedulerOutcome.RESTART:
            exit_code = self.restart_exit_code
        elif outcome == SchedulerOutcome.ERROR:
            exit_code = 1
        else:
            exit_code = 0
        return RunResult(
            agent=self.name,
            outcome=outcome,
            exit_code=exit_code,
            last_cycle=self.status.cycle if self.status else 0,
            cycles_run=self.cycles_run,
            reason=reason if reason is not None else (
                self.status.reason if self.status else None
            ),
        )
