"""Tests for the filesystem artifact store."""

from datetime import timedelta

import pytest

from convergence.app.models.agent import AgentState, StatusRecord, load_descriptors
from convergence.app.models.cycle import CycleRecord, Decision, TestMetrics, utcnow
from convergence.app.models.handoff import HandoffArtifact
from convergence.errors import ArtifactError, ConfigurationError


def _handoff(agent="api", state=AgentState.TERMINATED):
    now = utcnow()
    return HandoffArtifact(
        agent=agent,
        start_time=now - timedelta(minutes=5),
        end_time=now,
        cycles_used=3,
        test_metrics=TestMetrics.from_counts(9, 1),
        final_state=state,
    )


def _cycle(agent, index, decision=Decision.RESTART):
    now = utcnow()
    return CycleRecord(
        agent=agent,
        cycle_index=index,
        start_time=now,
        end_time=now,
        decision=decision,
    )


def test_status_round_trip(store):
    assert store.read_status("api") is None

    store.write_status(StatusRecord(agent="api", state=AgentState.EXECUTING, cycle=2))
    status = store.read_status("api")

    assert status.state == AgentState.EXECUTING
    assert status.cycle == 2


def test_malformed_status_raises(store):
    store.status_path("api").write_text("{broken")
    with pytest.raises(ArtifactError):
        store.read_status("api")
    assert store.list_statuses() == []


def test_writes_leave_no_temp_files(store):
    for cycle in range(5):
        store.write_status(StatusRecord(agent="api", cycle=cycle))
    assert [p.name for p in (store.root / "status").iterdir()] == ["api.json"]


def test_handoff_is_written_once(store):
    store.write_handoff(_handoff())

    with pytest.raises(ArtifactError):
        store.write_handoff(_handoff(state=AgentState.ERROR))

    assert store.read_handoff("api").final_state == AgentState.TERMINATED
    assert [p.name for p in (store.root / "handoffs").iterdir()] == ["api.json"]


def test_malformed_handoff_is_not_valid(store):
    store.handoff_path("api").write_text('{"agent": "api"')
    assert store.has_valid_handoff("api") is False
    assert store.has_valid_handoff("missing") is False


def test_cycle_log_is_strictly_increasing(store):
    store.append_cycle(_cycle("api", 1))
    store.append_cycle(_cycle("api", 2))

    with pytest.raises(ArtifactError):
        store.append_cycle(_cycle("api", 2))

    assert [c.cycle_index for c in store.read_cycles("api")] == [1, 2]
    assert store.last_cycle("api").cycle_index == 2


def test_reset_refuses_after_handoff(store):
    store.write_status(StatusRecord(agent="api"))
    store.append_cycle(_cycle("api", 1))
    store.request_cancel("api")

    store.reset_agent("api")
    assert store.read_status("api") is None
    assert store.read_cycles("api") == []
    assert not store.cancel_requested("api")

    store.write_handoff(_handoff())
    with pytest.raises(ArtifactError):
        store.reset_agent("api")


def test_test_output_tail(store):
    store.write_test_output("api", "\n".join(f"line {i}" for i in range(300)))
    tail = store.read_test_output("api", tail_lines=100)
    lines = tail.splitlines()
    assert len(lines) == 100
    assert lines[-1] == "line 299"


def test_feedback_and_cancel_markers(store):
    assert store.read_feedback("api") is None
    store.feedback_path("api").write_text("Focus on the auth tests.\n")
    assert "auth" in store.read_feedback("api")

    store.request_cancel("api")
    assert store.cancel_requested("api")
    store.clear_cancel("api")
    assert not store.cancel_requested("api")


def test_load_descriptors_yaml(workdir):
    path = workdir / "agents.yaml"
    path.write_text(
        "agents:\n"
        "  - name: schema\n"
        "    max_cycles: 5\n"
        "    target_pass_rate: 85\n"
        "  - name: api\n"
        "    dependencies: [schema]\n"
        "    max_cycles: 3\n"
        "    target_pass_rate: 90\n"
        "    restart_mode: goal_oriented\n"
    )
    descriptors = load_descriptors(path)
    assert [d.name for d in descriptors] == ["schema", "api"]
    assert descriptors[1].dependencies == ["schema"]
    assert descriptors[1].restart_mode.value == "goal_oriented"


@pytest.mark.parametrize(
    "content",
    [
        "- name: a\n  max_cycles: 0\n  target_pass_rate: 85\n",
        "- name: a\n  max_cycles: 3\n  target_pass_rate: 120\n",
        "- name: a\n  max_cycles: 3\n  target_pass_rate: 85\n"
        "- name: a\n  max_cycles: 2\n  target_pass_rate: 85\n",
        "agents: [\n",
    ],
)
def test_load_descriptors_rejects_invalid(workdir, content):
    path = workdir / "agents.yaml"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        load_descriptors(path)


def test_test_metrics_invariants():
    with pytest.raises(ValueError):
        TestMetrics(total=5, passing=3, failing=1)
    assert TestMetrics.from_counts(0, 0).pass_rate == 0.0
    assert TestMetrics.from_counts(1, 2).pass_rate == pytest.approx(33.333, rel=1e-3)
