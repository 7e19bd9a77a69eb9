"""Test harness evaluation."""

from convergence.quality.report_parsers import (
    DEFAULT_PARSERS,
    JestJsonParser,
    JestSummaryParser,
    PytestSummaryParser,
    ReportParser,
    VitestSummaryParser,
    parse_report,
)
from convergence.quality.test_runner import TestEvaluator

__all__ = [
    "DEFAULT_PARSERS",
    "JestJsonParser",
    "JestSummaryParser",
    "PytestSummaryParser",
    "ReportParser",
    "VitestSummaryParser",
    "parse_report",
    "TestEvaluator",
]
