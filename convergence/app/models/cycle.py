"""Per-cycle records: test metrics, workspace snapshots and decisions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


class Decision(str, Enum):
    """Outcome of the DECIDING step."""
    CONTINUE = "continue"
    RESTART = "restart"
    MAINTAIN = "maintain"
    DONE = "done"
    ERROR = "error"  # recorded by the scheduler, never returned by a policy


class TestMetrics(BaseModel):
    """Counts recovered from one test harness run."""

    __test__ = False

    total: int = Field(ge=0)
    passing: int = Field(ge=0)
    failing: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> "TestMetrics":
        if self.total != self.passing + self.failing:
            raise ValueError(
                f"total ({self.total}) must equal passing ({self.passing}) "
                f"+ failing ({self.failing})"
            )
        return self

    @classmethod
    def from_counts(cls, passing: int, failing: int) -> "TestMetrics":
        return cls(total=passing + failing, passing=passing, failing=failing)

    @computed_field
    @property
    def pass_rate(self) -> float:
        """Percentage of passing tests; 0 when no tests ran."""
        if self.total == 0:
            return 0.0
        return self.passing * 100.0 / self.total


class WorkspaceSnapshot(BaseModel):
    """Uncommitted (or base..HEAD) change counts for a workspace."""
    files_modified: int = 0
    files_added: int = 0
    files_deleted: int = 0
    lines_added: int = 0
    lines_deleted: int = 0

    @property
    def files_changed(self) -> int:
        return self.files_modified + self.files_added + self.files_deleted

    @property
    def has_changes(self) -> bool:
        return self.files_changed > 0


class CycleRecord(BaseModel):
    """One execute, evaluate, preserve and decide round. Append-only."""
    agent: str
    cycle_index: int = Field(ge=1)
    start_time: datetime
    end_time: datetime
    test_metrics: Optional[TestMetrics] = None
    commit_id: Optional[str] = None
    decision: Decision
    reason: str = ""
    error: Optional[str] = None

    @property
    def pass_rate(self) -> float:
        return self.test_metrics.pass_rate if self.test_metrics else 0.0
