"""Tests for the convergence command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from convergence.app.models.agent import AgentState
from convergence.cli import main
from convergence.git.worktree_manager import WorkspaceManager
from convergence.store.artifact_store import ArtifactStore

WORK_COMMAND = (
    "cat > prompt.txt; "
    "printf 'Tests:       1 failed, 9 passed, 10 total\\n' > test-report.txt"
)


@pytest.fixture
def agents_file(workdir, git_repo):
    path = workdir / "agents.yaml"
    path.write_text(yaml.safe_dump({
        "agents": [
            {
                "name": "schema",
                "max_cycles": 1,
                "target_pass_rate": 85,
                "workspace": str(git_repo),
                "test_command": "cat test-report.txt",
                "executor_command": WORK_COMMAND,
            },
            {
                "name": "api",
                "dependencies": ["schema"],
                "max_cycles": 3,
                "target_pass_rate": 90,
            },
        ]
    }))
    return path


@pytest.fixture
def cli(workdir, git_repo, agents_file):
    runner = CliRunner()
    base = [
        "--shared-dir", str(workdir / "shared"),
        "--agents-file", str(agents_file),
        "--project-root", str(git_repo),
    ]

    def invoke(*args):
        return runner.invoke(main, [*base, *args])

    return invoke


def test_plan(cli):
    result = cli("plan")

    assert result.exit_code == 0, result.output
    assert "Level 1: schema" in result.output
    assert "Level 2: api" in result.output
    assert "Critical path: schema -> api (4 cycles max)" in result.output


def test_plan_rejects_cycles(workdir, cli, agents_file):
    agents_file.write_text(yaml.safe_dump([
        {"name": "a", "dependencies": ["b"], "max_cycles": 1, "target_pass_rate": 80},
        {"name": "b", "dependencies": ["a"], "max_cycles": 1, "target_pass_rate": 80},
    ]))

    result = cli("plan")

    assert result.exit_code != 0
    assert "Error" in result.output


def test_run_agent_then_status_and_aggregate(cli, workdir, git_repo):
    result = cli("run-agent", "schema")

    assert result.exit_code == 0, result.output
    assert "schema: terminated after cycle 1" in result.output

    store = ArtifactStore(workdir / "shared")
    assert store.read_handoff("schema").test_metrics.pass_rate == 90.0
    assert (git_repo / "prompt.txt").read_text().startswith("You are")

    status = json.loads(cli("status", "--json").stdout)
    rows = {row["agent"]: row for row in status["agents"]}
    assert rows["schema"]["state"] == AgentState.TERMINATED.value
    assert rows["api"]["health"] == "not_started"

    # api has not run, so aggregation is refused
    refused = cli("aggregate", "--no-commit")
    assert refused.exit_code != 0
    assert "api" in refused.output


def test_aggregate_with_commit(cli, workdir, git_repo):
    assert cli("run-agent", "schema").exit_code == 0
    cli("cancel", "api")
    store = ArtifactStore(workdir / "shared")
    assert store.cancel_requested("api")

    # Finish api through the scheduler's cancel path without running any work
    api_result = cli("run-agent", "api")
    assert api_result.exit_code == 0, api_result.output

    result = cli("aggregate")

    assert result.exit_code == 0, result.output
    assert "Overall pass rate: 90.0%" in result.output
    assert "Integration commit:" in result.output
    latest = WorkspaceManager(git_repo).read_history(git_repo)[0]
    assert latest.message.agent == "integration"


def test_cancel_unknown_agent(cli):
    result = cli("cancel", "nobody")
    assert result.exit_code != 0
    assert "Unknown agent" in result.output
