"""Prompt templates handed to the task executor each cycle."""

from typing import Optional


def _metrics_section(
    passing: Optional[int],
    failing: Optional[int],
    pass_rate: Optional[float],
    target: float
) -> str:
    if pass_rate is None:
        return f"""- Tests passing: unknown
- Tests failing: unknown
- Pass rate: not measured yet
- Target: {target:g}%"""

    return f"""- Tests passing: {passing}
- Tests failing: {failing}
- Pass rate: {pass_rate:.1f}%
- Target: {target:g}%"""


def get_cycle_prompt(
    agent: str,
    cycle: int,
    max_cycles: int,
    target: float,
    task: str = "",
    passing: Optional[int] = None,
    failing: Optional[int] = None,
    pass_rate: Optional[float] = None,
    test_output: str = "",
    feedback: Optional[str] = None
) -> str:
    """
    Generate the prompt for one improvement cycle.

    Args:
        agent: Agent name
        cycle: Current cycle index (1-based)
        max_cycles: Agent's cycle budget
        target: Target pass rate
        task: Agent's task description
        passing: Passing tests from the previous evaluation
        failing: Failing tests from the previous evaluation
        pass_rate: Pass rate from the previous evaluation
        test_output: Tail of the previous test run's output
        feedback: Operator feedback, if any

    Returns:
        Formatted prompt
    """
    feedback_section = ""
    if feedback:
        feedback_section = f"""
## Operator Feedback

{feedback.strip()}
"""

    task_section = ""
    if task:
        task_section = f"""
## Your Task

{task.strip()}
"""

    return f"""You are working on {agent}.
This is improvement cycle {cycle} of {max_cycles}.

## Current Test Results

{_metrics_section(passing, failing, pass_rate, target)}

## Test Output From Last Run

{test_output.strip() or "No test output yet"}
{feedback_section}{task_section}
## Instructions

Analyze the failures and implement the functionality needed to make the tests pass.
Your work is committed automatically at the end of this cycle; do not commit it yourself.
"""


def get_debug_prompt(
    agent: str,
    cycle: int,
    max_cycles: int,
    target: float,
    passing: Optional[int] = None,
    failing: Optional[int] = None,
    pass_rate: Optional[float] = None,
    test_output: str = ""
) -> str:
    """Analysis-only prompt used when debug mode is enabled."""
    return f"""# DEBUG MODE - Analysis Only

You are running in debug mode for {agent}.
This is cycle {cycle} of {max_cycles}.

## Current Test Results

{_metrics_section(passing, failing, pass_rate, target)}

## Test Output From Last Run

{test_output.strip() or "No test output yet"}

## Instructions

Report what needs to be implemented to make the failing tests pass.
Do NOT modify any source code.
"""
