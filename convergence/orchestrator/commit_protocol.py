"""Work preservation: commit an agent's workspace at every cycle boundary."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import git as gitpython
from git import Repo

from convergence.app.config import settings
from convergence.app.models.cycle import TestMetrics, utcnow
from convergence.app.models.handoff import AgentAttribution
from convergence.errors import AggregationFailure, CommitFailure
from convergence.git.worktree_manager import (
    CommitMessage,
    CommitPurpose,
    WorkspaceManager,
)

logger = logging.getLogger(__name__)

INTEGRATION_AGENT = "integration"


class CommitProtocol:
    """
    Crash-safe preservation of agent work.

    Every preserve runs to completion even if the calling task is cancelled,
    so a restart or operator stop never discards an in-flight commit.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        retry_delay: Optional[float] = None,
        integration_root: Optional[Path] = None,
        integration_branch: Optional[str] = None,
        summary_path: Optional[str] = None
    ):
        """
        Initialize commit protocol.

        Args:
            workspaces: Workspace manager performing diffs and commits
            retry_delay: Pause before the single commit retry (seconds)
            integration_root: Repository receiving the final integration commit
                (default: workspaces.project_root)
            integration_branch: Branch agent work is merged into
            summary_path: Path of the summary file inside integration_root
        """
        self.workspaces = workspaces
        self.retry_delay = (
            retry_delay if retry_delay is not None else settings.commit_retry_delay
        )
        self.integration_root = (
            Path(integration_root) if integration_root else workspaces.project_root
        )
        self.integration_branch = integration_branch or settings.integration_branch
        self.summary_path = summary_path or settings.integration_summary_path

    async def preserve(
        self,
        agent: str,
        workspace: Path,
        cycle: Optional[int],
        metrics: Optional[TestMetrics] = None,
        purpose: CommitPurpose = CommitPurpose.CHECKPOINT
    ) -> Optional[str]:
        """
        Snapshot the workspace and commit it.

        Args:
            agent: Agent name recorded in the commit message
            workspace: Agent workspace
            cycle: Cycle index recorded in the commit message
            metrics: This cycle's test metrics, if the harness produced any
            purpose: Commit purpose tag

        Returns:
            Commit SHA, or None if there was nothing to preserve

        Raises:
            CommitFailure: If the commit fails twice
        """
        task = asyncio.ensure_future(
            self._preserve(agent, workspace, cycle, metrics, purpose)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(
                f"Cancellation during preserve for {agent}; finishing commit first"
            )
            while not task.done():
                try:
                    await asyncio.wait({task})
                except asyncio.CancelledError:
                    continue
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    f"Preserve for {agent} failed during cancellation: "
                    f"{task.exception()}"
                )
            raise

    async def _preserve(
        self,
        agent: str,
        workspace: Path,
        cycle: Optional[int],
        metrics: Optional[TestMetrics],
        purpose: CommitPurpose
    ) -> Optional[str]:
        try:
            return await asyncio.to_thread(
                self._commit_once, agent, workspace, cycle, metrics, purpose
            )
        except CommitFailure as e:
            logger.warning(
                f"Commit for {agent} failed, retrying in {self.retry_delay}s: {e}"
            )

        await asyncio.sleep(self.retry_delay)
        return await asyncio.to_thread(
            self._commit_once, agent, workspace, cycle, metrics, purpose
        )

    def _commit_once(
        self,
        agent: str,
        workspace: Path,
        cycle: Optional[int],
        metrics: Optional[TestMetrics],
        purpose: CommitPurpose,
        paths: Optional[list[str]] = None,
        pass_rate: Optional[float] = None
    ) -> Optional[str]:
        try:
            snapshot = self.workspaces.diff_stats(workspace, paths=paths)
        except (gitpython.GitError, OSError) as e:
            raise CommitFailure(f"Cannot snapshot {workspace}: {e}") from e

        if not snapshot.has_changes:
            logger.info(f"Nothing to preserve for {agent} (cycle {cycle})")
            return None

        message = CommitMessage.for_snapshot(
            agent,
            purpose,
            snapshot,
            cycle=cycle,
            pass_rate=metrics.pass_rate if metrics else pass_rate,
        )
        return self.workspaces.commit(workspace, message, paths=paths)

    def final_integration_commit(
        self,
        agent_results: list[AgentAttribution],
        overall_pass_rate: float,
        merge_branches: Optional[list[str]] = None
    ) -> str:
        """
        Record the integrated result in the integration repository.

        Optionally merges agent branches first, then writes the summary file
        and commits it. Agent handoffs are never touched.

        Args:
            agent_results: Per-agent attribution from the integration report
            overall_pass_rate: Test-count weighted pass rate
            merge_branches: Agent branches to merge before committing

        Returns:
            SHA of the integration commit (HEAD if nothing changed)

        Raises:
            AggregationFailure: On merge conflicts or a rejected commit
        """
        if self.integration_root is None:
            raise AggregationFailure("No integration repository configured")

        if merge_branches:
            self._merge_branches(merge_branches)

        summary = {
            "generated_at": utcnow().isoformat(),
            "overall_pass_rate": overall_pass_rate,
            "agents": [r.model_dump(mode="json") for r in agent_results],
        }
        summary_file = self.integration_root / self.summary_path
        summary_file.parent.mkdir(parents=True, exist_ok=True)
        summary_file.write_text(json.dumps(summary, indent=2) + "\n")

        try:
            commit_id = self._commit_once(
                INTEGRATION_AGENT,
                self.integration_root,
                None,
                None,
                CommitPurpose.FINAL_INTEGRATION,
                paths=[self.summary_path],
                pass_rate=overall_pass_rate,
            )
        except CommitFailure as e:
            raise AggregationFailure(f"Final integration commit failed: {e}") from e

        if commit_id is None:
            commit_id = self.workspaces.head_commit(self.integration_root)
        logger.info(f"Final integration commit: {commit_id}")
        return commit_id

    def _merge_branches(self, branches: list[str]) -> None:
        """
        Merge agent branches into the integration branch, one at a time.

        A conflicting merge is aborted so the integration branch stays at the
        last clean merge.

        Raises:
            AggregationFailure: On checkout failure, conflicts or a failed merge
        """
        repo = Repo(self.integration_root)
        actor = self.workspaces.actor(INTEGRATION_AGENT)
        identity = {
            "GIT_AUTHOR_NAME": actor.name,
            "GIT_AUTHOR_EMAIL": actor.email,
            "GIT_COMMITTER_NAME": actor.name,
            "GIT_COMMITTER_EMAIL": actor.email,
        }

        try:
            repo.git.checkout(self.integration_branch)
        except gitpython.GitCommandError as e:
            raise AggregationFailure(
                f"Cannot check out {self.integration_branch}: {e}"
            ) from e

        for branch in branches:
            try:
                with repo.git.custom_environment(**identity):
                    repo.git.merge(branch, "--no-edit", "-m", f"Integrate {branch}")
            except gitpython.GitCommandError as e:
                conflicted = sorted(str(path) for path in repo.index.unmerged_blobs())
                if conflicted:
                    repo.git.merge("--abort")
                    logger.error(
                        f"Merging {branch} conflicts in {', '.join(conflicted)}; aborted"
                    )
                    raise AggregationFailure(
                        f"Merging {branch} conflicts in: {', '.join(conflicted)}"
                    ) from e
                raise AggregationFailure(f"Cannot merge {branch}: {e}") from e
            logger.info(f"Merged {branch} into {self.integration_branch}")
