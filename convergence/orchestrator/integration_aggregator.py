"""Integration aggregator: combine terminal agents into one final report."""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from convergence.app.config import settings
from convergence.app.models.agent import AgentDescriptor, AgentState
from convergence.app.models.cycle import TestMetrics, utcnow
from convergence.app.models.handoff import (
    AgentAttribution,
    Alert,
    FilesChanged,
    HandoffArtifact,
    IntegrationReport,
)
from convergence.errors import AggregationFailure, ArtifactError
from convergence.orchestrator.commit_protocol import INTEGRATION_AGENT, CommitProtocol
from convergence.store.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class AgentHealth(str, Enum):
    """Liveness of an agent as seen from its status record."""
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    STALE = "stale"
    FINISHED = "finished"
    FAILED = "failed"


class AgentOverview(BaseModel):
    """One row of the live status overview."""
    agent: str
    state: Optional[AgentState] = None
    cycle: int = 0
    max_cycles: int
    pass_rate: float = 0.0
    target_pass_rate: float
    health: AgentHealth
    heartbeat: Optional[datetime] = None
    blocked_on: list[str] = []
    reason: Optional[str] = None


class IntegrationAggregator:
    """
    Produces the final IntegrationReport once every agent is terminal.

    Workflow:
    1. Wait until every agent's status is MAINTENANCE, TERMINATED or ERROR
    2. Cross-check each status against the agent's handoff
    3. Weight pass rates by test count and attribute work per agent
    4. Publish the report, then record it with a final integration commit
    """

    def __init__(
        self,
        store: ArtifactStore,
        descriptors: list[AgentDescriptor],
        commits: Optional[CommitProtocol] = None,
        merge_branches: bool = False,
        stale_after: Optional[float] = None
    ):
        """
        Initialize aggregator.

        Args:
            store: Shared artifact store
            descriptors: Every agent that must finish before integration
            commits: Commit protocol for the final integration commit
                (None: report only)
            merge_branches: Merge successful agents' branches before committing
            stale_after: Heartbeat age in seconds that marks an agent stale
        """
        self.store = store
        self.descriptors = descriptors
        self.commits = commits
        self.merge_branches = merge_branches
        self.stale_after = stale_after if stale_after is not None else settings.stale_after

    def pending_agents(self) -> list[str]:
        """Agents without a terminal status record."""
        pending = []
        for descriptor in self.descriptors:
            try:
                status = self.store.read_status(descriptor.name)
            except ArtifactError as e:
                logger.warning(f"Unreadable status for {descriptor.name}: {e}")
                status = None
            if status is None or not status.state.is_terminal:
                pending.append(descriptor.name)
        return pending

    async def wait_for_barrier(
        self,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None
    ) -> None:
        """
        Block until every agent is terminal.

        Args:
            timeout: Give up after this many seconds (None waits forever)
            poll_interval: Seconds between polls (default: settings.poll_interval)

        Raises:
            AggregationFailure: If agents are still running at the timeout
        """
        interval = poll_interval if poll_interval is not None else settings.poll_interval
        start = time.monotonic()

        while True:
            pending = self.pending_agents()
            if not pending:
                logger.info("All agents terminal; ready to aggregate")
                return

            waited = time.monotonic() - start
            if timeout is not None and waited >= timeout:
                raise AggregationFailure(
                    f"Agents still running after {waited:.1f}s: {', '.join(pending)}"
                )

            logger.info(f"Waiting for agents: {', '.join(pending)}")
            await asyncio.sleep(interval)

    async def aggregate(self) -> IntegrationReport:
        """
        Build, publish and commit the integration report.

        Returns:
            The published IntegrationReport

        Raises:
            AggregationFailure: If any agent is not terminal, artifacts are
                inconsistent, or the final integration commit fails
        """
        pending = self.pending_agents()
        if pending:
            raise AggregationFailure(
                f"Cannot aggregate while agents are running: {', '.join(pending)}"
            )

        handoffs: list[HandoffArtifact] = []
        attribution: list[AgentAttribution] = []

        for descriptor in self.descriptors:
            handoff = self._checked_handoff(descriptor)
            handoffs.append(handoff)
            attribution.append(self._attribute(descriptor, handoff))

        passing = sum(a.passing_tests for a in attribution)
        total = sum(a.total_tests for a in attribution)
        overall = round(passing * 100 / total, 2) if total else 0.0

        files_changed = FilesChanged()
        for handoff in handoffs:
            files_changed = files_changed + handoff.files_changed

        flagged = [a.agent for a in attribution if a.flagged]
        report = IntegrationReport(
            agent=INTEGRATION_AGENT,
            start_time=min((h.start_time for h in handoffs), default=utcnow()),
            end_time=utcnow(),
            cycles_used=sum(h.cycles_used for h in handoffs),
            test_metrics=TestMetrics.from_counts(passing, total - passing),
            files_changed=files_changed,
            recommendations="\n".join(self._recommendations(attribution)),
            final_state=AgentState.TERMINATED,
            reason=(
                f"{len(attribution)} agents integrated"
                + (f", flagged: {', '.join(flagged)}" if flagged else "")
            ),
            overall_pass_rate=overall,
            attribution=attribution,
            alerts=self._report_alerts(attribution),
        )
        self.store.write_report(report)
        logger.info(
            f"Integration report written: {overall}% over {total} tests "
            f"from {len(attribution)} agents"
        )

        if self.commits is not None:
            branches = None
            if self.merge_branches:
                # Only agents on their own worktree have a branch named after them
                own_branch = {
                    d.name for d in self.descriptors if d.workspace is None
                }
                branches = [
                    a.agent for a in attribution
                    if a.state != AgentState.ERROR and a.agent in own_branch
                ]
            commit_id = await asyncio.to_thread(
                self.commits.final_integration_commit,
                attribution,
                overall,
                branches,
            )
            report.commit_id = commit_id
            self.store.write_report(report)

        return report

    def overview(self, now: Optional[datetime] = None) -> list[AgentOverview]:
        """Live view of every agent for the CLI and status API."""
        now = now or utcnow()
        rows = []
        for descriptor in self.descriptors:
            try:
                status = self.store.read_status(descriptor.name)
            except ArtifactError:
                status = None

            if status is None:
                rows.append(AgentOverview(
                    agent=descriptor.name,
                    max_cycles=descriptor.max_cycles,
                    target_pass_rate=descriptor.target_pass_rate,
                    health=AgentHealth.NOT_STARTED,
                ))
                continue

            if status.state == AgentState.ERROR:
                health = AgentHealth.FAILED
            elif status.state.is_terminal:
                health = AgentHealth.FINISHED
            else:
                last_seen = status.heartbeat or status.updated_at
                age = (now - last_seen).total_seconds()
                health = AgentHealth.STALE if age > self.stale_after else AgentHealth.ACTIVE

            rows.append(AgentOverview(
                agent=descriptor.name,
                state=status.state,
                cycle=status.cycle,
                max_cycles=descriptor.max_cycles,
                pass_rate=status.pass_rate,
                target_pass_rate=descriptor.target_pass_rate,
                health=health,
                heartbeat=status.heartbeat,
                blocked_on=status.blocked_on,
                reason=status.reason,
            ))
        return rows

    def live_alerts(self, now: Optional[datetime] = None) -> list[Alert]:
        """Alerts for running agents: stale heartbeats and failures."""
        alerts = []
        for row in self.overview(now):
            if row.health == AgentHealth.STALE:
                alerts.append(Alert(
                    level="warning",
                    agent=row.agent,
                    message="Agent appears stale (no recent heartbeat)",
                ))
            elif row.health == AgentHealth.FAILED:
                alerts.append(Alert(
                    level="critical",
                    agent=row.agent,
                    message=f"Agent has failed: {row.reason}",
                ))
        return alerts

    def _checked_handoff(self, descriptor: AgentDescriptor) -> HandoffArtifact:
        status = self.store.read_status(descriptor.name)
        try:
            handoff = self.store.read_handoff(descriptor.name)
        except ArtifactError as e:
            raise AggregationFailure(str(e)) from e

        if handoff is None:
            raise AggregationFailure(
                f"{descriptor.name} is {status.state.value} but has no handoff"
            )
        if handoff.agent != descriptor.name:
            raise AggregationFailure(
                f"Handoff for {descriptor.name} names agent {handoff.agent}"
            )
        if handoff.final_state != status.state:
            raise AggregationFailure(
                f"{descriptor.name} status is {status.state.value} but handoff "
                f"says {handoff.final_state.value}"
            )
        return handoff

    def _attribute(
        self,
        descriptor: AgentDescriptor,
        handoff: HandoffArtifact
    ) -> AgentAttribution:
        metrics = handoff.test_metrics
        if metrics is None:
            # Fall back to the last measured cycle (ERROR agents may never
            # have reached a clean evaluation before stopping)
            try:
                measured = [c for c in self.store.read_cycles(descriptor.name) if c.test_metrics]
            except ArtifactError:
                measured = []
            metrics = measured[-1].test_metrics if measured else None

        flagged = handoff.final_state == AgentState.ERROR
        return AgentAttribution(
            agent=descriptor.name,
            state=handoff.final_state,
            cycles_used=handoff.cycles_used,
            pass_rate=round(metrics.pass_rate, 2) if metrics else 0.0,
            target_pass_rate=descriptor.target_pass_rate,
            total_tests=metrics.total if metrics else 0,
            passing_tests=metrics.passing if metrics else 0,
            files_changed=handoff.files_changed,
            flagged=flagged,
            reason=handoff.reason if flagged else None,
        )

    def _report_alerts(self, attribution: list[AgentAttribution]) -> list[Alert]:
        alerts = []
        for a in attribution:
            if a.flagged:
                alerts.append(Alert(
                    level="critical",
                    agent=a.agent,
                    message=f"Agent has failed: {a.reason}",
                ))
            elif a.target_pass_rate is not None and a.pass_rate < a.target_pass_rate:
                alerts.append(Alert(
                    level="warning",
                    agent=a.agent,
                    message=(
                        f"Test pass rate below target: {a.pass_rate}% "
                        f"< {a.target_pass_rate:g}%"
                    ),
                ))
        return alerts

    def _recommendations(self, attribution: list[AgentAttribution]) -> list[str]:
        recommendations = []

        failed = [a.agent for a in attribution if a.flagged]
        if failed:
            recommendations.append(f"Investigate failed agents: {', '.join(failed)}")

        below = [
            a.agent for a in attribution
            if not a.flagged
            and a.target_pass_rate is not None
            and a.pass_rate < a.target_pass_rate
        ]
        if below:
            recommendations.append(f"Improve test pass rates for: {', '.join(below)}")

        if not recommendations:
            recommendations.append("All agents met their targets; ready to ship.")
        return recommendations
