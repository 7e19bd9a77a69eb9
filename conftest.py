"""Shared fixtures: throwaway git repositories, artifact stores and executors."""

import tempfile
from pathlib import Path

import pytest
from git import Actor, Repo

from convergence.errors import ExecutionFailure
from convergence.git.worktree_manager import WorkspaceManager
from convergence.orchestrator.commit_protocol import CommitProtocol
from convergence.orchestrator.cycle_scheduler import CycleScheduler
from convergence.orchestrator.dependency_gate import DependencyGate
from convergence.orchestrator.executor import ExecutionResult, TaskExecutor
from convergence.store.artifact_store import ArtifactStore

TEST_ACTOR = Actor("Test User", "test@example.com")
REPORT_FILE = "test-report.txt"
REPORT_COMMAND = f"cat {REPORT_FILE}"


def init_repo(path: Path) -> Repo:
    """Create a repository on main with three source files committed."""
    repo = Repo.init(path)
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    (path / "README.md").write_text("# Test project\n")
    (path / "src").mkdir()
    for name in ("a.js", "b.js", "c.js"):
        (path / "src" / name).write_text(f"// {name}\nmodule.exports = {{}};\n")
    repo.index.add(["README.md", "src/a.js", "src/b.js", "src/c.js"])
    repo.index.commit("Initial commit", author=TEST_ACTOR, committer=TEST_ACTOR)
    return repo


class ScriptedExecutor(TaskExecutor):
    """
    Executor that writes one source file per cycle plus a Jest-style report.

    ``results`` maps cycle index to (passed, failed); cycles listed in
    ``failing_cycles`` raise ExecutionFailure instead.
    """

    def __init__(self, results=None, failing_cycles=()):
        self.results = results or {}
        self.failing_cycles = set(failing_cycles)
        self.contexts = []

    async def execute(self, workspace, context):
        self.contexts.append(context)
        if context.cycle in self.failing_cycles:
            raise ExecutionFailure(f"scripted failure in cycle {context.cycle}")

        (workspace / "src" / f"cycle_{context.cycle}.js").write_text(
            f"// work from cycle {context.cycle}\n"
        )
        passed, failed = self.results.get(context.cycle, (5, 5))
        (workspace / REPORT_FILE).write_text(
            f"Tests:       {failed} failed, {passed} passed, {passed + failed} total\n"
        )
        return ExecutionResult(output=f"cycle {context.cycle} done")

    @property
    def cycles(self):
        return [c.cycle for c in self.contexts]


@pytest.fixture
def workdir():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def git_repo(workdir):
    path = workdir / "project"
    path.mkdir()
    init_repo(path)
    return path


@pytest.fixture
def store(workdir):
    return ArtifactStore(workdir / "shared")


@pytest.fixture
def fast_gate(store):
    return DependencyGate(
        store, poll_interval=0.05, backoff=1.0, max_interval=0.05, max_wait=5.0
    )


@pytest.fixture
def make_scheduler(git_repo, store, fast_gate):
    """Factory for schedulers working directly in the test repository."""

    def _make(descriptor, executor, **kwargs):
        workspaces = WorkspaceManager(git_repo)
        kwargs.setdefault("gate", fast_gate)
        kwargs.setdefault("commits", CommitProtocol(workspaces, retry_delay=0))
        kwargs.setdefault("workspace", git_repo)
        kwargs.setdefault("heartbeat_interval", 3600)
        kwargs.setdefault("debug", False)
        return CycleScheduler(
            descriptor=descriptor,
            store=store,
            workspaces=workspaces,
            executor=executor,
            **kwargs
        )

    return _make
