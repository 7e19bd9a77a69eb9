"""Failure taxonomy for agents, the commit protocol and aggregation."""

from typing import Optional


class ConvergenceError(Exception):
    """Base class for orchestration failures."""
    pass


class ExecutionFailure(ConvergenceError):
    """Raised when the task executor errors; retried next cycle within budget."""
    pass


class TestHarnessFailure(ConvergenceError):
    """
    Raised when the test harness produced no parseable report.

    Distinct from failing tests: a report with failures is a normal result.
    """

    __test__ = False  # keep pytest from collecting this as a test class

    def __init__(self, reason: str, detail: Optional[str] = None):
        self.reason = reason  # timeout, unparseable, spawn_error
        self.detail = detail
        message = f"Test harness failure: {reason}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class CommitFailure(ConvergenceError):
    """Raised when the storage backend rejects a commit."""
    pass


class DependencyTimeout(ConvergenceError):
    """Raised when upstream handoffs do not appear within the wait bound."""

    def __init__(self, missing: list[str], waited: float):
        self.missing = missing
        self.waited = waited
        super().__init__(
            f"Dependencies not ready after {waited:.1f}s: {', '.join(missing)}"
        )


class OperatorCancelled(ConvergenceError):
    """Raised when the operator's cancel marker appears while an agent waits."""
    pass


class AggregationFailure(ConvergenceError):
    """Raised when the final integration summary cannot be produced."""
    pass


class ArtifactError(ConvergenceError):
    """Raised when a coordination artifact is malformed or already written."""
    pass


class ConfigurationError(ConvergenceError):
    """Raised when the agent descriptor list is invalid."""
    pass
