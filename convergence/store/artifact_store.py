"""Filesystem artifact store shared by every agent process.

Status records, cycle logs, handoffs and the integration report live under a
single shared directory. All writes go through a temp file in the target
directory followed by fsync and rename, so a concurrently polling reader sees
either the previous or the complete new content, never a partial file.
Handoffs are additionally published with a no-clobber hard link so they can
be written at most once.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, TypeAdapter, ValidationError

from convergence.app.models.agent import StatusRecord
from convergence.app.models.cycle import CycleRecord
from convergence.app.models.handoff import HandoffArtifact, IntegrationReport
from convergence.errors import ArtifactError

logger = logging.getLogger(__name__)

_CYCLE_LOG = TypeAdapter(list[CycleRecord])

SUBDIRS = (
    "status",
    "cycles",
    "handoffs",
    "blockers",
    "feedback",
    "control",
    "test-results",
    "integration",
)


def _write_temp(path: Path, content: str) -> Path:
    """Write content to a fsynced temp file next to path and return it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return Path(tmp_name)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace path with content atomically."""
    path = Path(path)
    tmp_path = _write_temp(path, content)
    try:
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise ArtifactError(f"Failed to write {path}: {e}") from e


def write_once_text(path: Path, content: str) -> None:
    """
    Publish content at path only if nothing is there yet.

    Raises:
        ArtifactError: If path already exists
    """
    path = Path(path)
    tmp_path = _write_temp(path, content)
    try:
        os.link(tmp_path, path)
    except FileExistsError as e:
        raise ArtifactError(f"Artifact already written: {path}") from e
    finally:
        tmp_path.unlink(missing_ok=True)


class ArtifactStore:
    """Read and write coordination artifacts under a shared directory."""

    def __init__(self, shared_dir: Path):
        """
        Initialize artifact store.

        Args:
            shared_dir: Root of the shared coordination directory
        """
        self.root = Path(shared_dir)
        for sub in SUBDIRS:
            (self.root / sub).mkdir(parents=True, exist_ok=True)

    # Paths

    def status_path(self, agent: str) -> Path:
        return self.root / "status" / f"{agent}.json"

    def cycles_path(self, agent: str) -> Path:
        return self.root / "cycles" / f"{agent}.json"

    def handoff_path(self, agent: str) -> Path:
        return self.root / "handoffs" / f"{agent}.json"

    def blocker_path(self, agent: str) -> Path:
        return self.root / "blockers" / f"{agent}.json"

    def feedback_path(self, agent: str) -> Path:
        return self.root / "feedback" / f"{agent}.md"

    def cancel_path(self, agent: str) -> Path:
        return self.root / "control" / f"{agent}.cancel"

    def test_output_path(self, agent: str) -> Path:
        return self.root / "test-results" / f"{agent}-latest.txt"

    @property
    def report_path(self) -> Path:
        return self.root / "integration" / "report.json"

    # Status records

    def read_status(self, agent: str) -> Optional[StatusRecord]:
        """
        Load an agent's status record.

        Returns:
            StatusRecord, or None if the agent never started

        Raises:
            ArtifactError: If the record exists but cannot be parsed
        """
        return self._read_model(self.status_path(agent), StatusRecord)

    def write_status(self, record: StatusRecord) -> None:
        atomic_write_text(
            self.status_path(record.agent), record.model_dump_json(indent=2)
        )

    def list_statuses(self) -> list[StatusRecord]:
        """All readable status records, sorted by agent name."""
        records = []
        for path in sorted((self.root / "status").glob("*.json")):
            try:
                record = self._read_model(path, StatusRecord)
            except ArtifactError as e:
                logger.warning(f"Skipping unreadable status file: {e}")
                continue
            if record is not None:
                records.append(record)
        return records

    # Cycle log

    def read_cycles(self, agent: str) -> list[CycleRecord]:
        path = self.cycles_path(agent)
        if not path.exists():
            return []
        try:
            return _CYCLE_LOG.validate_json(path.read_text())
        except ValidationError as e:
            raise ArtifactError(f"Malformed cycle log {path}: {e}") from e

    def last_cycle(self, agent: str) -> Optional[CycleRecord]:
        cycles = self.read_cycles(agent)
        return cycles[-1] if cycles else None

    def append_cycle(self, record: CycleRecord) -> None:
        """
        Append a cycle record, enforcing strictly increasing cycle indices.

        Raises:
            ArtifactError: If the index does not advance
        """
        cycles = self.read_cycles(record.agent)
        if cycles and record.cycle_index <= cycles[-1].cycle_index:
            raise ArtifactError(
                f"Cycle index for {record.agent} must advance past "
                f"{cycles[-1].cycle_index}, got {record.cycle_index}"
            )
        cycles.append(record)
        atomic_write_text(
            self.cycles_path(record.agent),
            _CYCLE_LOG.dump_json(cycles, indent=2).decode(),
        )

    # Handoffs

    def read_handoff(self, agent: str) -> Optional[HandoffArtifact]:
        """
        Load an agent's handoff.

        Returns:
            HandoffArtifact, or None if it has not been published

        Raises:
            ArtifactError: If the file exists but is malformed
        """
        return self._read_model(self.handoff_path(agent), HandoffArtifact)

    def has_valid_handoff(self, agent: str) -> bool:
        try:
            return self.read_handoff(agent) is not None
        except ArtifactError as e:
            logger.warning(f"Ignoring malformed handoff for {agent}: {e}")
            return False

    def write_handoff(self, artifact: HandoffArtifact) -> None:
        """
        Publish a handoff. Each agent gets at most one.

        Raises:
            ArtifactError: If the agent already has a handoff
        """
        write_once_text(
            self.handoff_path(artifact.agent), artifact.model_dump_json(indent=2)
        )
        logger.info(f"Published handoff for {artifact.agent}")

    # Blockers, feedback, control markers, test output

    def write_blocker(self, agent: str, payload: dict) -> None:
        atomic_write_text(self.blocker_path(agent), json.dumps(payload, indent=2))

    def read_feedback(self, agent: str) -> Optional[str]:
        path = self.feedback_path(agent)
        return path.read_text() if path.exists() else None

    def request_cancel(self, agent: str, reason: str = "operator_cancelled") -> None:
        atomic_write_text(self.cancel_path(agent), reason)
        logger.info(f"Cancellation requested for {agent}: {reason}")

    def cancel_requested(self, agent: str) -> bool:
        return self.cancel_path(agent).exists()

    def clear_cancel(self, agent: str) -> None:
        self.cancel_path(agent).unlink(missing_ok=True)

    def write_test_output(self, agent: str, output: str) -> None:
        atomic_write_text(self.test_output_path(agent), output)

    def read_test_output(self, agent: str, tail_lines: int = 100) -> str:
        path = self.test_output_path(agent)
        if not path.exists():
            return ""
        lines = path.read_text(errors="replace").splitlines()
        return "\n".join(lines[-tail_lines:])

    # Integration report

    def write_report(self, report: IntegrationReport) -> None:
        atomic_write_text(self.report_path, report.model_dump_json(indent=2))

    def read_report(self) -> Optional[IntegrationReport]:
        return self._read_model(self.report_path, IntegrationReport)

    # Reset

    def reset_agent(self, agent: str) -> None:
        """
        Clear an agent's status, cycle log, blocker and cancel marker.

        Raises:
            ArtifactError: If the agent already published a handoff
        """
        if self.handoff_path(agent).exists():
            raise ArtifactError(
                f"Cannot reset {agent}: handoff already published"
            )
        for path in (
            self.status_path(agent),
            self.cycles_path(agent),
            self.blocker_path(agent),
            self.cancel_path(agent),
        ):
            path.unlink(missing_ok=True)
        logger.info(f"Reset persisted state for {agent}")

    def _read_model(self, path: Path, model: type[BaseModel]):
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text())
        except (ValidationError, OSError, UnicodeDecodeError) as e:
            raise ArtifactError(f"Malformed artifact {path}: {e}") from e
