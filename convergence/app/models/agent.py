"""Agent descriptors and persisted agent status."""

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from convergence.app.models.cycle import Decision, TestMetrics, utcnow
from convergence.errors import ConfigurationError


class RestartMode(str, Enum):
    """Restart policy selector."""
    UNCONDITIONAL = "unconditional"
    GOAL_ORIENTED = "goal_oriented"


class AgentState(str, Enum):
    """Stored scheduler states. RESTARTING is an exit signal, never stored."""
    INIT = "init"
    AWAIT_DEPENDENCIES = "await_dependencies"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    PRESERVING = "preserving"
    DECIDING = "deciding"
    MAINTENANCE = "maintenance"
    TERMINATED = "terminated"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_mid_cycle(self) -> bool:
        return self in (
            AgentState.EXECUTING,
            AgentState.EVALUATING,
            AgentState.PRESERVING,
        )


TERMINAL_STATES = frozenset(
    {AgentState.MAINTENANCE, AgentState.TERMINATED, AgentState.ERROR}
)


class AgentDescriptor(BaseModel):
    """Launch configuration for one agent. Immutable once the agent starts."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    dependencies: list[str] = []
    max_cycles: int = Field(gt=0)
    target_pass_rate: float = Field(ge=0, le=100)
    restart_mode: RestartMode = RestartMode.UNCONDITIONAL
    task: str = ""
    test_command: str = "npm test"
    workspace: Optional[Path] = None
    executor_command: Optional[str] = None

    def resolve_workspace(self, worktrees_dir: Path) -> Path:
        """Workspace path, defaulting to the agent's worktree."""
        if self.workspace is not None:
            return Path(self.workspace)
        return Path(worktrees_dir) / self.name


class StatusRecord(BaseModel):
    """Externally visible agent state; the only state that survives a restart."""
    agent: str
    state: AgentState = AgentState.INIT
    cycle: int = 0
    pass_rate: float = 0.0
    updated_at: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None
    blocked_on: list[str] = []
    restart_mode: Optional[RestartMode] = None
    started_at: Optional[datetime] = None
    base_commit: Optional[str] = None
    last_metrics: Optional[TestMetrics] = None
    last_decision: Optional[Decision] = None
    heartbeat: Optional[datetime] = None

    def touch(self) -> None:
        self.updated_at = utcnow()


_DESCRIPTOR_LIST = TypeAdapter(list[AgentDescriptor])


def load_descriptors(path: Path) -> list[AgentDescriptor]:
    """
    Read the agent descriptor list from a YAML or JSON file.

    Accepts either a bare list or a mapping with an ``agents`` key.

    Args:
        path: Path to the descriptor file

    Returns:
        Parsed descriptors

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Agent descriptor file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("agents", [])

    try:
        descriptors = _DESCRIPTOR_LIST.validate_python(raw or [])
    except ValidationError as e:
        raise ConfigurationError(f"Invalid agent descriptors in {path}: {e}") from e

    names = [d.name for d in descriptors]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate agent names: {', '.join(duplicates)}")

    return descriptors
