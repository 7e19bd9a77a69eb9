"""Restart policies: what an agent does after each evaluated cycle."""

import logging
from abc import ABC, abstractmethod

from convergence.app.models.agent import RestartMode
from convergence.app.models.cycle import Decision

logger = logging.getLogger(__name__)


class RestartPolicy(ABC):
    """Base class for restart policies."""

    @property
    @abstractmethod
    def mode(self) -> RestartMode:
        """Descriptor value that selects this policy."""
        pass

    @abstractmethod
    def decide(
        self,
        cycle_index: int,
        max_cycles: int,
        pass_rate: float,
        target: float
    ) -> Decision:
        """
        Choose the next transition after a cycle.

        Args:
            cycle_index: Index of the cycle just evaluated (1-based)
            max_cycles: Agent's cycle budget
            pass_rate: Pass rate measured this cycle (0 on harness failure)
            target: Agent's target pass rate

        Returns:
            CONTINUE, RESTART, MAINTAIN or DONE
        """
        pass

    def explain(
        self,
        decision: Decision,
        cycle_index: int,
        max_cycles: int,
        pass_rate: float,
        target: float
    ) -> str:
        """Human-readable reason recorded alongside a decision."""
        if decision == Decision.DONE:
            return (
                f"cycle budget exhausted ({cycle_index}/{max_cycles}) at "
                f"{pass_rate:.1f}% (target {target:.1f}%)"
            )
        if decision == Decision.MAINTAIN:
            return f"target reached: {pass_rate:.1f}% >= {target:.1f}%"
        if decision == Decision.RESTART:
            return (
                f"unconditional restart after cycle {cycle_index}/{max_cycles} "
                f"at {pass_rate:.1f}%"
            )
        return (
            f"below target: {pass_rate:.1f}% < {target:.1f}%, "
            f"cycle {cycle_index}/{max_cycles}"
        )


class UnconditionalRestartPolicy(RestartPolicy):
    """Restart with fresh context after every cycle until the budget is spent."""

    @property
    def mode(self) -> RestartMode:
        return RestartMode.UNCONDITIONAL

    def decide(
        self,
        cycle_index: int,
        max_cycles: int,
        pass_rate: float,
        target: float
    ) -> Decision:
        if cycle_index >= max_cycles:
            return Decision.DONE
        return Decision.RESTART


class GoalOrientedPolicy(RestartPolicy):
    """Keep iterating in-process until the target is met or the budget is spent."""

    @property
    def mode(self) -> RestartMode:
        return RestartMode.GOAL_ORIENTED

    def decide(
        self,
        cycle_index: int,
        max_cycles: int,
        pass_rate: float,
        target: float
    ) -> Decision:
        if pass_rate >= target:
            return Decision.MAINTAIN
        if cycle_index >= max_cycles:
            return Decision.DONE
        return Decision.CONTINUE


_REGISTRY: dict[RestartMode, RestartPolicy] = {}


def register_policy(policy: RestartPolicy) -> None:
    """Register (or replace) the policy for its restart mode."""
    if policy.mode in _REGISTRY:
        logger.warning(f"Replacing restart policy for {policy.mode.value}")
    _REGISTRY[policy.mode] = policy


def policy_for(mode: RestartMode) -> RestartPolicy:
    """
    Look up the policy for a restart mode.

    Raises:
        KeyError: If no policy is registered for mode
    """
    try:
        return _REGISTRY[RestartMode(mode)]
    except KeyError:
        raise KeyError(f"No restart policy registered for {mode}") from None


register_policy(UnconditionalRestartPolicy())
register_policy(GoalOrientedPolicy())
