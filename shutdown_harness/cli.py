"""
Shutdown Harness CLI

Launches the target once per test case, drives it through its signal plan
and reports whether it exited gracefully and released its resources.

Usage:
    shutdown-harness --binary ./bin/app [--app-dir ./test-app] [--verbose]
    shutdown-harness --cases cases.yaml [--case "SIGTERM Shutdown" ...]
    python -m shutdown_harness --binary ./bin/app --list

Exit codes:
    0  all cases passed
    1  at least one case failed, or the run was interrupted
    2  the harness could not start (missing binary/app dir, invalid cases)
"""

import argparse
import shutil
import sys
from pathlib import Path
from typing import List, Optional

from shutdown_harness.config import default_suite, load_cases
from shutdown_harness.errors import ConfigError
from shutdown_harness.orchestrator import DEFAULT_INTER_CASE_DELAY, Orchestrator
from shutdown_harness.reporting import BANNER_WIDTH, exit_status, print_outcome, print_summary, timestamp

EXIT_INFRA_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shutdown-harness",
        description="Verify that a target process shuts down gracefully on termination signals",
    )
    parser.add_argument("--binary", help="Path to the target executable")
    parser.add_argument("--app-dir", help="Working directory for the target")
    parser.add_argument("--cases", help="YAML file describing test cases (default: built-in suite)")
    parser.add_argument(
        "--case",
        action="append",
        dest="only",
        metavar="NAME",
        help="Run only the named case (repeatable)",
    )
    parser.add_argument("--list", action="store_true", help="List the test cases and exit")
    parser.add_argument(
        "--inter-case-delay",
        type=float,
        default=None,
        help=f"Seconds to wait between cases (default: {DEFAULT_INTER_CASE_DELAY})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Print harness progress")
    return parser


def _resolve_binary(binary: str) -> Optional[str]:
    path = Path(binary)
    if path.is_file():
        return str(path.resolve())
    return shutil.which(binary)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    binary = None
    if args.binary:
        binary = _resolve_binary(args.binary)
        if binary is None:
            print(f"ERROR: Binary not found: {args.binary}")
            return EXIT_INFRA_ERROR
    elif not args.cases:
        print("ERROR: --binary is required unless --cases is given")
        return EXIT_INFRA_ERROR

    if args.app_dir and not Path(args.app_dir).is_dir():
        print(f"ERROR: App directory not found: {args.app_dir}")
        return EXIT_INFRA_ERROR

    inter_case_delay = DEFAULT_INTER_CASE_DELAY
    try:
        if args.cases:
            suite = load_cases(Path(args.cases), binary=binary)
            cases = suite.cases
            if suite.inter_case_delay is not None:
                inter_case_delay = suite.inter_case_delay
        else:
            cases = default_suite(binary, args.app_dir)
        if args.inter_case_delay is not None:
            inter_case_delay = args.inter_case_delay

        orchestrator = Orchestrator(
            cases,
            inter_case_delay=inter_case_delay,
            verbose=args.verbose,
            on_outcome=print_outcome,
        )
        selected = orchestrator.select(args.only)
    except ConfigError as e:
        print(f"ERROR: {e}")
        return EXIT_INFRA_ERROR

    if args.list:
        for case in selected:
            print(f"{case.name}: {case.plan.describe()}")
            if case.description:
                print(f"    {case.description}")
        return 0

    print("=" * BANNER_WIDTH)
    print("  Shutdown Verification")
    print("=" * BANNER_WIDTH)
    if binary:
        print(f"Binary:  {binary}")
    if args.app_dir:
        print(f"App dir: {args.app_dir}")
    print(f"Cases:   {len(selected)}")
    print(f"Started: {timestamp()}\n")

    try:
        report = orchestrator.run(args.only)
    except KeyboardInterrupt:
        # run_case releases the current target on the way out
        print("\n[Harness] Test run interrupted")
        return 1

    print()
    print_summary(report)
    return exit_status(report)


if __name__ == "__main__":
    sys.exit(main())
