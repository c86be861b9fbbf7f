"""Tests for outcome formatting, the summary and exit status."""

from __future__ import annotations

import io

from shutdown_harness.models import FailureKind, TestOutcome, TestReport
from shutdown_harness.reporting import (
    exit_status,
    format_outcome,
    format_summary,
    print_outcome,
    print_summary,
)


def _report(*outcomes: TestOutcome) -> TestReport:
    report = TestReport()
    for outcome in outcomes:
        report.append(outcome)
    return report.finalize()


PASSED = TestOutcome("SIGTERM Shutdown", True, 153.4, 0, None, "Shutdown time: 153ms, Code: 0, Signal: None")
TIMED_OUT = TestOutcome(
    "Stuck Target",
    False,
    None,
    None,
    "SIGKILL",
    "Timeout - forced kill required (no exit within 1000ms)",
    failure=FailureKind.SHUTDOWN_TIMEOUT,
)
NOT_READY = TestOutcome(
    "Never Ready",
    False,
    None,
    None,
    "SIGKILL",
    "did not start: no 'ready' within 0.5s\nOutput tail:\nStarting up",
    failure=FailureKind.NOT_READY,
)


def test_format_passed_outcome():
    assert format_outcome(PASSED) == "[PASS] SIGTERM Shutdown (153ms): Shutdown time: 153ms, Code: 0, Signal: None"


def test_format_failed_outcome_without_elapsed():
    assert format_outcome(TIMED_OUT).startswith("[FAIL] Stuck Target (-): Timeout - forced kill required")


def test_multiline_details_are_indented():
    lines = format_outcome(NOT_READY).splitlines()
    assert lines[0] == "[FAIL] Never Ready (-): did not start: no 'ready' within 0.5s"
    assert lines[1:] == ["      Output tail:", "      Starting up"]


def test_summary_lists_failures_in_order():
    summary = format_summary(_report(PASSED, TIMED_OUT, NOT_READY))
    assert "  Passed: 1" in summary
    assert "  Failed: 2" in summary
    assert "  Total:  3" in summary
    failed = summary[summary.index("  Failed tests:") + 1 : -1]
    assert failed == [
        "    - Stuck Target: Timeout - forced kill required (no exit within 1000ms)",
        "    - Never Ready: did not start: no 'ready' within 0.5s",
    ]


def test_summary_without_failures():
    summary = format_summary(_report(PASSED))
    assert "  Failed tests:" not in summary
    assert summary[0] == summary[-1] == "=" * 60


def test_exit_status():
    assert exit_status(_report(PASSED)) == 0
    assert exit_status(_report(PASSED, TIMED_OUT)) == 1
    assert exit_status(_report()) == 0


def test_print_helpers_write_to_stream():
    stream = io.StringIO()
    print_outcome(PASSED, stream)
    print_summary(_report(PASSED), stream)
    text = stream.getvalue()
    assert text.startswith("[")
    assert "] [PASS] SIGTERM Shutdown" in text
    assert "Test Results:" in text
