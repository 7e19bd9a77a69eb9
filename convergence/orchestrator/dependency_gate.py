"""Dependency gate: block an agent until its upstream handoffs are published."""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel

from convergence.app.config import settings
from convergence.errors import DependencyTimeout
from convergence.store.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class GateStatus(str, Enum):
    """Dependency gate result."""
    READY = "ready"
    BLOCKED = "blocked"


class GateResult(BaseModel):
    """Outcome of one or more gate polls."""
    status: GateStatus
    missing: list[str] = []
    waited: float = 0.0
    polls: int = 0

    @property
    def ready(self) -> bool:
        return self.status == GateStatus.READY


class DependencyGate:
    """Polls the shared handoff store with exponential backoff."""

    def __init__(
        self,
        store: ArtifactStore,
        poll_interval: Optional[float] = None,
        backoff: Optional[float] = None,
        max_interval: Optional[float] = None,
        max_wait: Optional[float] = None
    ):
        """
        Initialize dependency gate.

        Args:
            store: Shared artifact store holding handoffs
            poll_interval: First delay between polls (seconds)
            backoff: Multiplier applied to the delay after each poll
            max_interval: Upper bound on the delay
            max_wait: Total wait after which DependencyTimeout is raised
        """
        self.store = store
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.poll_interval
        )
        self.backoff = backoff if backoff is not None else settings.poll_backoff
        self.max_interval = (
            max_interval if max_interval is not None else settings.max_poll_interval
        )
        self.max_wait = (
            max_wait if max_wait is not None else settings.max_dependency_wait
        )

    def check(self, dependencies: list[str]) -> GateResult:
        """
        Poll once without blocking.

        A dependency counts only when its handoff is present and well-formed.

        Args:
            dependencies: Upstream agent names

        Returns:
            GateResult with READY or BLOCKED and the missing names
        """
        missing = [dep for dep in dependencies if not self.store.has_valid_handoff(dep)]
        status = GateStatus.BLOCKED if missing else GateStatus.READY
        return GateResult(status=status, missing=missing, polls=1)

    async def wait_for(
        self,
        agent: str,
        dependencies: list[str],
        on_blocked: Optional[Callable[[list[str]], None]] = None
    ) -> GateResult:
        """
        Block until every dependency has published its handoff.

        Args:
            agent: Waiting agent (for logging)
            dependencies: Upstream agent names
            on_blocked: Called with the missing names after each blocked poll;
                an exception it raises ends the wait

        Returns:
            READY GateResult

        Raises:
            DependencyTimeout: If handoffs are still missing after max_wait
        """
        start = time.monotonic()
        delay = self.poll_interval
        polls = 0

        while True:
            result = self.check(dependencies)
            polls += 1
            waited = time.monotonic() - start

            if result.ready:
                if polls > 1:
                    logger.info(
                        f"Dependencies ready for {agent} after {waited:.1f}s"
                    )
                return GateResult(status=GateStatus.READY, waited=waited, polls=polls)

            if on_blocked:
                on_blocked(result.missing)

            if waited >= self.max_wait:
                logger.error(
                    f"{agent} gave up waiting on {', '.join(result.missing)} "
                    f"after {waited:.1f}s"
                )
                raise DependencyTimeout(result.missing, waited)

            logger.info(
                f"{agent} waiting on {', '.join(result.missing)} "
                f"(next poll in {delay:.1f}s)"
            )
            await asyncio.sleep(min(delay, max(self.max_wait - waited, 0)))
            delay = min(delay * self.backoff, self.max_interval)
