"""
Reporting

Pure formatting over outcomes and the finished TestReport, plus thin print
wrappers. Exit status: 0 when every case passed, 1 otherwise.
"""

import sys
from datetime import datetime, timezone
from typing import List, Optional, TextIO

from shutdown_harness.models import TestOutcome, TestReport

BANNER_WIDTH = 60


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def format_elapsed(elapsed_ms: Optional[float]) -> str:
    return "-" if elapsed_ms is None else f"{elapsed_ms:.0f}ms"


def format_outcome(outcome: TestOutcome) -> str:
    status = "[PASS]" if outcome.passed else "[FAIL]"
    first, _, rest = outcome.details.partition("\n")
    line = f"{status} {outcome.case_name} ({format_elapsed(outcome.elapsed_ms)}): {first}"
    if rest:
        line += "\n" + "\n".join(f"      {extra}" for extra in rest.splitlines())
    return line


def format_summary(report: TestReport) -> List[str]:
    lines = [
        "=" * BANNER_WIDTH,
        "  Test Results:",
        f"  Passed: {report.passed}",
        f"  Failed: {report.failed}",
        f"  Total:  {report.total}",
    ]
    failures = report.failures()
    if failures:
        lines.append("")
        lines.append("  Failed tests:")
        for outcome in failures:
            first = outcome.details.partition("\n")[0]
            lines.append(f"    - {outcome.case_name}: {first}")
    lines.append("=" * BANNER_WIDTH)
    return lines


def exit_status(report: TestReport) -> int:
    return 0 if report.failed == 0 else 1


def print_outcome(outcome: TestOutcome, stream: Optional[TextIO] = None):
    stream = stream or sys.stdout
    print(f"[{timestamp()}] {format_outcome(outcome)}", file=stream, flush=True)


def print_summary(report: TestReport, stream: Optional[TextIO] = None):
    stream = stream or sys.stdout
    for line in format_summary(report):
        print(line, file=stream)
