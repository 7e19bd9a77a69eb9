"""Tests for restart policies and the policy registry."""

import pytest

from convergence.app.models.agent import RestartMode
from convergence.app.models.cycle import Decision
from convergence.orchestrator.restart_policy import (
    GoalOrientedPolicy,
    RestartPolicy,
    UnconditionalRestartPolicy,
    policy_for,
    register_policy,
)


def test_unconditional_restarts_until_budget_regardless_of_pass_rate():
    policy = UnconditionalRestartPolicy()
    for pass_rate in (0.0, 50.0, 100.0):
        decisions = [policy.decide(i, 5, pass_rate, 85.0) for i in range(1, 6)]
        assert decisions == [Decision.RESTART] * 4 + [Decision.DONE]


@pytest.mark.parametrize(
    "cycle, pass_rate, expected",
    [
        (1, 40.0, Decision.CONTINUE),
        (2, 92.0, Decision.MAINTAIN),
        (3, 90.0, Decision.MAINTAIN),
        (4, 89.9, Decision.CONTINUE),
        (5, 89.9, Decision.DONE),
        (5, 95.0, Decision.MAINTAIN),
    ],
)
def test_goal_oriented(cycle, pass_rate, expected):
    assert GoalOrientedPolicy().decide(cycle, 5, pass_rate, 90.0) == expected


def test_single_cycle_budget_finishes_immediately():
    assert UnconditionalRestartPolicy().decide(1, 1, 0.0, 85.0) == Decision.DONE
    assert GoalOrientedPolicy().decide(1, 1, 0.0, 85.0) == Decision.DONE


def test_registry_lookup():
    assert isinstance(policy_for(RestartMode.UNCONDITIONAL), UnconditionalRestartPolicy)
    assert isinstance(policy_for("goal_oriented"), GoalOrientedPolicy)


def test_new_policy_registers_without_scheduler_changes():
    class AlwaysRestart(UnconditionalRestartPolicy):
        def decide(self, cycle_index, max_cycles, pass_rate, target):
            return Decision.RESTART if cycle_index < max_cycles else Decision.DONE

    original = policy_for(RestartMode.UNCONDITIONAL)
    try:
        register_policy(AlwaysRestart())
        assert isinstance(policy_for(RestartMode.UNCONDITIONAL), AlwaysRestart)
    finally:
        register_policy(original)


def test_explain_mentions_numbers():
    policy: RestartPolicy = GoalOrientedPolicy()
    reason = policy.explain(Decision.MAINTAIN, 2, 5, 92.0, 90.0)
    assert "92.0%" in reason
    assert "90.0%" in reason
