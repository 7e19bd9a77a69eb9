"""Test harness execution and pass-rate evaluation."""

import asyncio
import codecs
import logging
import os
import signal
import time
from pathlib import Path
from typing import Optional

from convergence.app.config import settings
from convergence.app.models.cycle import TestMetrics
from convergence.errors import TestHarnessFailure
from convergence.quality.report_parsers import ReportParser, parse_report

logger = logging.getLogger(__name__)


class TestEvaluator:
    """Run a test command and recover pass/fail counts from its output."""

    __test__ = False

    def __init__(
        self,
        timeout: Optional[float] = None,
        parsers: Optional[list[ReportParser]] = None
    ):
        """
        Initialize evaluator.

        Args:
            timeout: Default bound on one harness run in seconds
                (default: settings.test_timeout)
            parsers: Report parser chain (default: all known formats)
        """
        self.timeout = timeout if timeout is not None else settings.test_timeout
        self.parsers = parsers
        self.last_output = ""
        self.last_duration = 0.0

    async def run(
        self,
        test_command: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None
    ) -> TestMetrics:
        """
        Run the harness and parse its report.

        A report with failing tests is a normal result. Only a missing report,
        a timeout or a command that cannot start is a harness failure.

        Args:
            test_command: Shell command that runs the test suite
            cwd: Working directory (the agent workspace)
            timeout: Override of the default bound

        Returns:
            TestMetrics for this run

        Raises:
            TestHarnessFailure: reason "timeout", "unparseable" or "spawn_error"
        """
        limit = timeout if timeout is not None else self.timeout
        start_time = time.time()
        self.last_output = ""

        try:
            process = await asyncio.create_subprocess_shell(
                test_command,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Cannot start test command '{test_command}': {e}")
            raise TestHarnessFailure("spawn_error", str(e)) from e

        chunks: list[str] = []
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        async def _drain() -> None:
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                chunks.append(decoder.decode(chunk))
            chunks.append(decoder.decode(b"", final=True))
            await process.wait()

        try:
            await asyncio.wait_for(_drain(), timeout=limit)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            self.last_output = "".join(chunks)
            logger.error(f"Test command timed out after {limit}s")
            raise TestHarnessFailure("timeout", f"no result after {limit}s")
        except asyncio.CancelledError:
            self._kill(process)
            raise

        self.last_output = "".join(chunks)
        self.last_duration = time.time() - start_time

        # Shells report unknown commands with 127 and unrunnable ones with 126
        if process.returncode in (126, 127) and parse_report(
            self.last_output, self.parsers
        ) is None:
            raise TestHarnessFailure(
                "spawn_error", f"'{test_command}' exited {process.returncode}"
            )

        metrics = parse_report(self.last_output, self.parsers)
        if metrics is None:
            logger.warning(
                f"No test report found in output of '{test_command}' "
                f"(exit code {process.returncode})"
            )
            raise TestHarnessFailure(
                "unparseable", f"exit code {process.returncode}"
            )

        logger.info(
            f"Tests: {metrics.passing}/{metrics.total} passing "
            f"({metrics.pass_rate:.1f}%) in {self.last_duration:.1f}s"
        )
        return metrics

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        # The harness runs in its own session; take down the whole group so
        # grandchildren cannot keep the output pipe open
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
