"""Handoff artifacts published by terminated agents and by the aggregator."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from convergence.app.models.agent import AgentState
from convergence.app.models.cycle import TestMetrics, WorkspaceSnapshot


class FilesChanged(BaseModel):
    """Files changed summary carried by a handoff."""
    modified: int = 0
    added: int = 0
    deleted: int = 0

    @classmethod
    def from_snapshot(cls, snapshot: WorkspaceSnapshot) -> "FilesChanged":
        return cls(
            modified=snapshot.files_modified,
            added=snapshot.files_added,
            deleted=snapshot.files_deleted,
        )

    def __add__(self, other: "FilesChanged") -> "FilesChanged":
        return FilesChanged(
            modified=self.modified + other.modified,
            added=self.added + other.added,
            deleted=self.deleted + other.deleted,
        )


class HandoffArtifact(BaseModel):
    """Immutable record written once when an agent reaches a terminal state."""
    agent: str
    start_time: datetime
    end_time: datetime
    cycles_used: int
    test_metrics: Optional[TestMetrics] = None
    files_changed: FilesChanged = FilesChanged()
    recommendations: str = ""
    final_state: AgentState = AgentState.TERMINATED
    reason: Optional[str] = None


class AgentAttribution(BaseModel):
    """Per-agent line in the integration report."""
    agent: str
    state: AgentState
    cycles_used: int
    pass_rate: float
    target_pass_rate: Optional[float] = None
    total_tests: int = 0
    passing_tests: int = 0
    files_changed: FilesChanged = FilesChanged()
    flagged: bool = False
    reason: Optional[str] = None


class Alert(BaseModel):
    """Condition an operator should look at."""
    level: str  # warning, critical
    agent: str
    message: str


class IntegrationReport(HandoffArtifact):
    """Final handoff summarizing every agent's contribution."""
    overall_pass_rate: float = 0.0
    attribution: list[AgentAttribution] = []
    alerts: list[Alert] = []
    commit_id: Optional[str] = None
