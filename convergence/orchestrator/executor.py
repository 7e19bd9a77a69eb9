"""Task executors: the opaque work performed inside each cycle."""

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from convergence.app.config import settings
from convergence.app.models.cycle import TestMetrics
from convergence.errors import ExecutionFailure
from convergence.llm.prompt_templates import get_cycle_prompt, get_debug_prompt

logger = logging.getLogger(__name__)


class TaskContext(BaseModel):
    """Everything an executor is told about the cycle it runs in."""
    agent: str
    cycle: int
    max_cycles: int
    target: float
    task: str = ""
    last_metrics: Optional[TestMetrics] = None
    last_test_output: str = ""
    feedback: Optional[str] = None
    debug: bool = False


class ExecutionResult(BaseModel):
    """Output of one executor invocation."""
    exit_code: int = 0
    output: str = ""
    duration_seconds: float = 0.0


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def build_prompt(context: TaskContext) -> str:
    """Render the prompt for a cycle from its context."""
    metrics = context.last_metrics
    kwargs = dict(
        agent=context.agent,
        cycle=context.cycle,
        max_cycles=context.max_cycles,
        target=context.target,
        passing=metrics.passing if metrics else None,
        failing=metrics.failing if metrics else None,
        pass_rate=metrics.pass_rate if metrics else None,
        test_output=context.last_test_output,
    )
    if context.debug:
        return get_debug_prompt(**kwargs)
    return get_cycle_prompt(task=context.task, feedback=context.feedback, **kwargs)


class TaskExecutor(ABC):
    """Base class for the work an agent performs in its workspace."""

    @abstractmethod
    async def execute(self, workspace: Path, context: TaskContext) -> ExecutionResult:
        """
        Perform one cycle of work in the workspace.

        Args:
            workspace: Agent workspace
            context: Cycle context (metrics, test output, feedback)

        Returns:
            ExecutionResult

        Raises:
            ExecutionFailure: If the work could not be performed
        """
        pass


class CommandExecutor(TaskExecutor):
    """Runs a shell command in the workspace with the cycle prompt on stdin."""

    def __init__(self, command: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize command executor.

        Args:
            command: Shell command (default: settings.executor_command)
            timeout: Bound on one invocation in seconds
                (default: settings.execution_timeout)
        """
        self.command = command or settings.executor_command
        self.timeout = timeout if timeout is not None else settings.execution_timeout

    async def execute(self, workspace: Path, context: TaskContext) -> ExecutionResult:
        prompt = build_prompt(context)
        loop = asyncio.get_running_loop()
        start = loop.time()

        logger.info(
            f"Invoking executor for {context.agent} cycle {context.cycle}: {self.command}"
        )
        try:
            process = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(workspace),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionFailure(f"Cannot start executor '{self.command}': {e}") from e

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(prompt.encode()), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            _kill_group(process)
            await process.wait()
            raise ExecutionFailure(f"Executor timed out after {self.timeout}s")
        except asyncio.CancelledError:
            _kill_group(process)
            raise

        output = stdout.decode("utf-8", errors="replace")
        duration = loop.time() - start

        if process.returncode != 0:
            tail = "\n".join(output.splitlines()[-20:])
            logger.error(
                f"Executor for {context.agent} exited {process.returncode}:\n{tail}"
            )
            raise ExecutionFailure(
                f"Executor exited with code {process.returncode}"
            )

        logger.info(f"Executor for {context.agent} finished in {duration:.1f}s")
        return ExecutionResult(
            exit_code=process.returncode,
            output=output,
            duration_seconds=duration,
        )
