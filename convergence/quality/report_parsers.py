"""Parsers that recover test counts from harness output."""

import re
from abc import ABC, abstractmethod
from typing import Optional

from convergence.app.models.cycle import TestMetrics

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class ReportParser(ABC):
    """Base class for test report parsers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the report format."""
        pass

    @abstractmethod
    def find(self, output: str) -> Optional[tuple[int, TestMetrics]]:
        """
        Locate the last summary of this format in the output.

        Args:
            output: Harness output with ANSI escapes removed

        Returns:
            Tuple of (offset of the summary, metrics), or None if absent
        """
        pass


class JestSummaryParser(ReportParser):
    """Jest summary line, e.g. ``Tests: 1 failed, 2 skipped, 5 passed, 8 total``."""

    LINE = re.compile(r"^\s*Tests:\s+(?P<body>.*\btotal)\s*$", re.MULTILINE)
    ITEM = re.compile(r"(\d+) (passed|failed)")

    @property
    def name(self) -> str:
        return "jest"

    def find(self, output: str) -> Optional[tuple[int, TestMetrics]]:
        found = None
        for match in self.LINE.finditer(output):
            counts = {"passed": 0, "failed": 0}
            for number, kind in self.ITEM.findall(match.group("body")):
                counts[kind] += int(number)
            found = (
                match.start(),
                TestMetrics.from_counts(counts["passed"], counts["failed"]),
            )
        return found


class VitestSummaryParser(ReportParser):
    """Vitest summary line, e.g. ``Tests  3 failed | 12 passed (15)``."""

    LINE = re.compile(r"^\s*Tests\s+(?P<body>[^:\n]+?)\s*\((\d+)\)\s*$", re.MULTILINE)
    ITEM = re.compile(r"(\d+) (passed|failed)")

    @property
    def name(self) -> str:
        return "vitest"

    def find(self, output: str) -> Optional[tuple[int, TestMetrics]]:
        found = None
        for match in self.LINE.finditer(output):
            items = self.ITEM.findall(match.group("body"))
            if not items:
                continue
            counts = {"passed": 0, "failed": 0}
            for number, kind in items:
                counts[kind] += int(number)
            found = (
                match.start(),
                TestMetrics.from_counts(counts["passed"], counts["failed"]),
            )
        return found


class JestJsonParser(ReportParser):
    """Aggregate counts from a ``jest --json`` report."""

    PASSED = re.compile(r'"numPassedTests"\s*:\s*(\d+)')
    FAILED = re.compile(r'"numFailedTests"\s*:\s*(\d+)')

    @property
    def name(self) -> str:
        return "jest-json"

    def find(self, output: str) -> Optional[tuple[int, TestMetrics]]:
        passed = list(self.PASSED.finditer(output))
        failed = list(self.FAILED.finditer(output))
        if not passed or not failed:
            return None
        last_passed, last_failed = passed[-1], failed[-1]
        return (
            min(last_passed.start(), last_failed.start()),
            TestMetrics.from_counts(
                int(last_passed.group(1)), int(last_failed.group(1))
            ),
        )


class PytestSummaryParser(ReportParser):
    """Pytest terminal summary, e.g. ``=== 3 failed, 10 passed in 0.12s ===``."""

    LINE = re.compile(
        r"^=*\s*(?P<body>no tests ran|\d+ \w+(?:, \d+ \w+)*) in [\d.]+s\b.*$",
        re.MULTILINE,
    )
    ITEM = re.compile(r"(\d+) (\w+)")

    @property
    def name(self) -> str:
        return "pytest"

    def find(self, output: str) -> Optional[tuple[int, TestMetrics]]:
        found = None
        for match in self.LINE.finditer(output):
            passing = failing = 0
            for number, kind in self.ITEM.findall(match.group("body")):
                if kind == "passed":
                    passing += int(number)
                elif kind in ("failed", "error", "errors"):
                    failing += int(number)
            found = (match.start(), TestMetrics.from_counts(passing, failing))
        return found


DEFAULT_PARSERS: list[ReportParser] = [
    JestSummaryParser(),
    VitestSummaryParser(),
    JestJsonParser(),
    PytestSummaryParser(),
]


def parse_report(
    output: str,
    parsers: Optional[list[ReportParser]] = None
) -> Optional[TestMetrics]:
    """
    Recover test metrics from harness output.

    Every parser is tried; when several summaries are present the one that
    appears last in the output wins.

    Args:
        output: Raw harness output
        parsers: Parser chain (default: DEFAULT_PARSERS)

    Returns:
        TestMetrics, or None if no parser recognised a summary
    """
    text = ANSI_ESCAPE.sub("", output)
    best: Optional[tuple[int, TestMetrics]] = None
    for parser in parsers or DEFAULT_PARSERS:
        result = parser.find(text)
        if result is not None and (best is None or result[0] >= best[0]):
            best = result
    return best[1] if best else None
