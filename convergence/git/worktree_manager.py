"""Git workspace manager: agent worktrees, change snapshots and commits."""

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

import git as gitpython
from git import Actor, Repo
from pydantic import BaseModel, Field, ValidationError

from convergence.app.models.cycle import WorkspaceSnapshot, utcnow
from convergence.errors import CommitFailure

logger = logging.getLogger(__name__)


class CommitPurpose(str, Enum):
    """Why a commit was made."""
    CHECKPOINT = "checkpoint"
    FINAL_INTEGRATION = "final-integration"


class CommitMessage(BaseModel):
    """Structured commit message: a subject line followed by a JSON body."""
    agent: str
    purpose: CommitPurpose
    cycle: Optional[int] = None
    files_modified: int = 0
    files_added: int = 0
    files_deleted: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    pass_rate: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_snapshot(
        cls,
        agent: str,
        purpose: CommitPurpose,
        snapshot: WorkspaceSnapshot,
        cycle: Optional[int] = None,
        pass_rate: Optional[float] = None
    ) -> "CommitMessage":
        return cls(
            agent=agent,
            purpose=purpose,
            cycle=cycle,
            files_modified=snapshot.files_modified,
            files_added=snapshot.files_added,
            files_deleted=snapshot.files_deleted,
            lines_added=snapshot.lines_added,
            lines_deleted=snapshot.lines_deleted,
            pass_rate=pass_rate,
        )

    def render(self) -> str:
        subject = f"[{self.purpose.value}] {self.agent}"
        if self.cycle is not None:
            subject += f" cycle {self.cycle}"
        subject += (
            f": {self.files_modified} modified, {self.files_added} added, "
            f"{self.files_deleted} deleted"
        )
        return f"{subject}\n\n{self.model_dump_json(indent=2)}\n"

    @classmethod
    def parse(cls, text: str) -> Optional["CommitMessage"]:
        """Recover the structured record from a rendered message, if any."""
        _, sep, body = text.partition("\n\n")
        if not sep:
            return None
        try:
            return cls.model_validate_json(body.strip())
        except ValidationError:
            return None


class CommitInfo(BaseModel):
    """One entry of a workspace's commit history."""
    sha: str
    summary: str
    committed_at: datetime
    message: Optional[CommitMessage] = None


class WorkspaceManager:
    """Manages agent workspaces: worktree lifecycle, snapshots and commits."""

    def __init__(
        self,
        project_root: Optional[Path] = None,
        worktrees_dir: Optional[Path] = None,
        email_domain: str = "convergence.local"
    ):
        """
        Initialize workspace manager.

        Args:
            project_root: Root of the main repository (needed for worktrees)
            worktrees_dir: Where agent worktrees live (default: <root>/.worktrees)
            email_domain: Domain used for agent commit identities
        """
        self.project_root = Path(project_root) if project_root else None
        if worktrees_dir is not None:
            self.worktrees_dir = Path(worktrees_dir)
        elif self.project_root is not None:
            self.worktrees_dir = self.project_root / ".worktrees"
        else:
            self.worktrees_dir = None
        self.email_domain = email_domain

    @property
    def repo(self) -> Repo:
        if self.project_root is None:
            raise ValueError("WorkspaceManager has no project_root configured")
        return Repo(self.project_root)

    def actor(self, agent: str) -> Actor:
        return Actor(f"agent-{agent}", f"agent-{agent}@{self.email_domain}")

    def diff_stats(
        self,
        workspace: Path,
        base: Optional[str] = None,
        paths: Optional[list[str]] = None
    ) -> WorkspaceSnapshot:
        """
        Count changed files and lines in a workspace. Read-only.

        Args:
            workspace: Path to the workspace (repository or worktree)
            base: If given, compare base..HEAD instead of working tree vs HEAD
            paths: Restrict the count to these workspace-relative paths

        Returns:
            Freshly computed WorkspaceSnapshot
        """
        repo = Repo(workspace)
        untracked: list[str] = []

        if base is not None:
            diff_args = [base, "HEAD"]
        elif repo.head.is_valid():
            diff_args = ["HEAD"]
            untracked = repo.untracked_files
        else:
            # Unborn branch: anything staged counts as added
            diff_args = ["--cached"]
            untracked = repo.untracked_files

        path_args = ["--", *paths] if paths else []
        if paths:
            untracked = [p for p in untracked if _under_any(p, paths)]

        name_status = repo.git.diff(
            *diff_args, "--name-status", "--no-renames", *path_args
        )
        numstat = repo.git.diff(*diff_args, "--numstat", "--no-renames", *path_args)

        snapshot = WorkspaceSnapshot()
        for line in name_status.splitlines():
            if not line.strip():
                continue
            code = line.split("\t", 1)[0][:1]
            if code == "A":
                snapshot.files_added += 1
            elif code == "D":
                snapshot.files_deleted += 1
            else:
                snapshot.files_modified += 1

        for line in numstat.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            # Binary files report "-" for both counts
            if parts[0].isdigit():
                snapshot.lines_added += int(parts[0])
            if parts[1].isdigit():
                snapshot.lines_deleted += int(parts[1])

        for rel_path in untracked:
            snapshot.files_added += 1
            snapshot.lines_added += self._count_lines(Path(workspace) / rel_path)

        return snapshot

    def commit(
        self,
        workspace: Path,
        message: CommitMessage,
        paths: Optional[list[str]] = None
    ) -> Optional[str]:
        """
        Stage changes and commit them with a structured message.

        Args:
            workspace: Path to the workspace
            message: Structured commit message
            paths: Stage only these paths (default: everything)

        Returns:
            Commit SHA, or None (NO_OP) when there is nothing to commit

        Raises:
            CommitFailure: If the repository rejects the commit
        """
        try:
            has_changes = self.diff_stats(workspace, paths=paths).has_changes
        except (gitpython.GitError, OSError) as e:
            raise CommitFailure(f"Cannot inspect {workspace}: {e}") from e
        if not has_changes:
            logger.info(f"No changes to commit in {workspace}")
            return None

        try:
            repo = Repo(workspace)
            if paths:
                repo.git.add("-A", "--", *paths)
            else:
                repo.git.add(A=True)
            actor = self.actor(message.agent)
            commit = repo.index.commit(
                message.render(),
                author=actor,
                committer=actor
            )
        except (gitpython.GitError, OSError) as e:
            logger.error(f"Commit rejected in {workspace}: {e}")
            raise CommitFailure(f"Commit rejected in {workspace}: {e}") from e

        logger.info(
            f"Committed {message.purpose.value} for {message.agent} "
            f"in {workspace}: {commit.hexsha[:8]}"
        )
        return commit.hexsha

    def read_history(self, workspace: Path, max_count: int = 50) -> list[CommitInfo]:
        """
        Recent commits, newest first, with structured messages parsed.

        Args:
            workspace: Path to the workspace
            max_count: Maximum number of commits to return

        Returns:
            List of CommitInfo
        """
        repo = Repo(workspace)
        if not repo.head.is_valid():
            return []

        history = []
        for commit in repo.iter_commits(max_count=max_count):
            message = commit.message
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            history.append(CommitInfo(
                sha=commit.hexsha,
                summary=message.splitlines()[0] if message else "",
                committed_at=commit.committed_datetime,
                message=CommitMessage.parse(message),
            ))
        return history

    def head_commit(self, workspace: Path) -> Optional[str]:
        """SHA of HEAD, or None for an unborn branch."""
        repo = Repo(workspace)
        if not repo.head.is_valid():
            return None
        return repo.head.commit.hexsha

    def ensure_worktree(
        self,
        branch_name: str,
        base_branch: str = "main"
    ) -> Path:
        """
        Create the agent's worktree, or reuse it if it already exists.

        Existing worktrees hold an agent's preserved work across restarts, so
        they are never recreated.

        Args:
            branch_name: Branch for the agent (e.g., "agent-schema-tests")
            base_branch: Branch to fork from when the branch does not exist

        Returns:
            Path to worktree directory

        Raises:
            gitpython.GitCommandError: If worktree creation fails
        """
        if self.worktrees_dir is None:
            raise ValueError("WorkspaceManager has no worktrees_dir configured")
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        worktree_path = self.worktrees_dir / branch_name

        if worktree_path.exists():
            logger.info(f"Reusing existing worktree: {worktree_path}")
            return worktree_path

        repo = self.repo
        self._exclude_worktrees_dir(repo)
        try:
            if branch_name in [head.name for head in repo.heads]:
                repo.git.worktree("add", str(worktree_path), branch_name)
            else:
                repo.git.worktree(
                    "add",
                    "-b", branch_name,
                    str(worktree_path),
                    base_branch
                )
            logger.info(f"Created worktree: {worktree_path}")
            return worktree_path

        except gitpython.GitCommandError as e:
            logger.error(f"Failed to create worktree {branch_name}: {e}")
            raise

    def remove_worktree(self, worktree_path: Path, force: bool = True) -> None:
        """
        Remove a worktree.

        Args:
            worktree_path: Path to worktree to remove
            force: Force removal even if worktree is dirty

        Raises:
            gitpython.GitCommandError: If removal fails
        """
        if not worktree_path.exists():
            logger.warning(f"Worktree {worktree_path} does not exist")
            return

        try:
            args = ["remove", str(worktree_path)]
            if force:
                args.append("--force")

            self.repo.git.worktree(*args)
            logger.info(f"Removed worktree: {worktree_path}")

        except gitpython.GitCommandError as e:
            logger.error(f"Failed to remove worktree {worktree_path}: {e}")
            raise

    def list_worktrees(self) -> list[dict[str, str]]:
        """
        List all worktrees.

        Returns:
            List of worktree info dicts with 'path' and 'branch' keys
        """
        output = self.repo.git.worktree("list", "--porcelain")
        worktrees = []
        current_worktree = {}

        for line in output.split("\n"):
            if line.startswith("worktree "):
                current_worktree["path"] = line.split(" ", 1)[1]
            elif line.startswith("branch "):
                current_worktree["branch"] = line.split(" ", 1)[1]
                worktrees.append(current_worktree)
                current_worktree = {}

        return worktrees

    def _exclude_worktrees_dir(self, repo: Repo) -> None:
        """Keep nested agent worktrees out of the main repository's status."""
        try:
            rel = self.worktrees_dir.resolve().relative_to(self.project_root.resolve())
        except ValueError:
            return

        exclude_path = Path(repo.git_dir) / "info" / "exclude"
        entry = f"/{rel.as_posix()}/"
        content = exclude_path.read_text() if exclude_path.exists() else ""
        if entry not in content.splitlines():
            exclude_path.parent.mkdir(parents=True, exist_ok=True)
            with exclude_path.open("a") as f:
                f.write(f"\n# Agent worktrees\n{entry}\n")

    @staticmethod
    def _count_lines(path: Path) -> int:
        if not path.is_file():
            return 0
        try:
            data = path.read_bytes()
        except OSError:
            return 0
        if not data or b"\0" in data:
            return 0
        return data.count(b"\n") + (0 if data.endswith(b"\n") else 1)


def _under_any(rel_path: str, paths: list[str]) -> bool:
    for prefix in paths:
        prefix = prefix.rstrip("/")
        if rel_path == prefix or rel_path.startswith(prefix + "/"):
            return True
    return False
