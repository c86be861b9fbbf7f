"""
Test Case Orchestrator

Runs registered cases one at a time, in registration order:

    PENDING -> LAUNCHING -> AWAITING_READY -> SIGNAL_PHASE
            -> AWAITING_EXIT -> VERIFYING -> CONCLUDED

Every failure inside a case is converted to a TestOutcome and the run moves
on. Cases never overlap, and a fixed delay between cases lets ports and
process-table entries settle. Each run() builds a fresh TestReport, so an
Orchestrator can be reused inside a larger test suite.
"""

import time
from typing import Callable, List, Optional, Sequence

from shutdown_harness.errors import ConfigError, HarnessError, LaunchError, ReadinessTimeout
from shutdown_harness.helpers import probe_http
from shutdown_harness.injector import SignalInjector, SignalRun
from shutdown_harness.launcher import Launcher, ProcessHandle
from shutdown_harness.models import (
    CASE_TRANSITIONS,
    DEFAULT_PORT_PATTERNS,
    CaseState,
    FailureKind,
    PortCheck,
    TestCase,
    TestOutcome,
    TestReport,
    discover_port,
)
from shutdown_harness.timer import Exited, ShutdownTimer
from shutdown_harness.verifier import Leaked, ResourceVerifier

DEFAULT_INTER_CASE_DELAY = 2.0
OUTPUT_TAIL_LINES = 20


class CaseRun:
    """State machine for a single test case."""

    def __init__(self, case: TestCase):
        self.case = case
        self.state = CaseState.PENDING
        self.history: List[CaseState] = [CaseState.PENDING]
        self.outcome: Optional[TestOutcome] = None

    def advance(self, new_state: CaseState):
        if new_state not in CASE_TRANSITIONS[self.state]:
            raise HarnessError(f"{self.case.name}: illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def conclude(
        self,
        passed: bool,
        details: str,
        failure: Optional[FailureKind] = None,
        elapsed_ms: Optional[float] = None,
        handle: Optional[ProcessHandle] = None,
        force: bool = False,
    ) -> TestOutcome:
        """Move to CONCLUDED and build the outcome. ``force`` bypasses the transition table."""
        if self.outcome is not None:
            raise HarnessError(f"{self.case.name}: already concluded")
        if force and self.state is not CaseState.CONCLUDED:
            self.state = CaseState.CONCLUDED
            self.history.append(CaseState.CONCLUDED)
        else:
            self.advance(CaseState.CONCLUDED)

        self.outcome = TestOutcome(
            case_name=self.case.name,
            passed=passed,
            elapsed_ms=elapsed_ms,
            exit_code=handle.exit_code if handle else None,
            exit_signal=handle.exit_signal if handle else None,
            details=details,
            failure=None if passed else failure,
            states=tuple(self.history),
            output=handle.output() if handle else "",
        )
        return self.outcome


class Orchestrator:
    """
    Sequential driver for a fixed, ordered list of test cases.

    Usage:
        orchestrator = Orchestrator(cases, on_outcome=print_outcome)
        report = orchestrator.run()
        sys.exit(exit_status(report))
    """

    def __init__(
        self,
        cases: Sequence[TestCase],
        launcher: Optional[Launcher] = None,
        injector: Optional[SignalInjector] = None,
        timer: Optional[ShutdownTimer] = None,
        verifier: Optional[ResourceVerifier] = None,
        inter_case_delay: float = DEFAULT_INTER_CASE_DELAY,
        verbose: bool = False,
        on_outcome: Optional[Callable[[TestOutcome], None]] = None,
    ):
        names = [case.name for case in cases]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigError(f"Duplicate test case names: {', '.join(duplicates)}")

        self.cases = tuple(cases)
        self.launcher = launcher or Launcher(verbose=verbose)
        self.injector = injector or SignalInjector(verbose=verbose)
        self.timer = timer or ShutdownTimer(verbose=verbose)
        self.verifier = verifier or ResourceVerifier(verbose=verbose)
        self.inter_case_delay = inter_case_delay
        self.verbose = verbose
        self.on_outcome = on_outcome

    def select(self, names: Optional[Sequence[str]] = None) -> List[TestCase]:
        """Registered cases filtered by name, keeping registration order."""
        if not names:
            return list(self.cases)
        known = {case.name for case in self.cases}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ConfigError(f"Unknown test case(s): {', '.join(unknown)}")
        wanted = set(names)
        return [case for case in self.cases if case.name in wanted]

    def run(self, only: Optional[Sequence[str]] = None) -> TestReport:
        report = TestReport()
        for index, case in enumerate(self.select(only)):
            if index > 0 and self.inter_case_delay > 0:
                time.sleep(self.inter_case_delay)
            outcome = self.run_case(case)
            report.append(outcome)
            if self.on_outcome is not None:
                self.on_outcome(outcome)
        return report.finalize()

    def run_case(self, case: TestCase) -> TestOutcome:
        run = CaseRun(case)
        handle: Optional[ProcessHandle] = None
        signals: Optional[SignalRun] = None

        if self.verbose:
            print(f"[Orchestrator] Running {case.name}: ready on {case.readiness.describe()}, plan {case.plan.describe()}")

        try:
            run.advance(CaseState.LAUNCHING)
            try:
                handle = self.launcher.launch(case.target)
            except LaunchError as e:
                return run.conclude(False, str(e), FailureKind.LAUNCH_ERROR)

            run.advance(CaseState.AWAITING_READY)
            try:
                ready = self.launcher.await_readiness(handle, case.readiness, case.startup_timeout)
            except ReadinessTimeout as e:
                if not e.exited:
                    handle.kill()
                    handle.wait_exited(self.timer.kill_wait)
                return run.conclude(
                    False,
                    f"did not start: {e}\nOutput tail:\n{handle.recent_output(OUTPUT_TAIL_LINES)}",
                    FailureKind.NOT_READY,
                    handle=handle,
                )

            run.advance(CaseState.SIGNAL_PHASE)
            notes: List[str] = []
            if case.probe is not None:
                notes.append(self._run_probe(case, handle))

            signals = self.injector.start(handle, case.plan, ready_at=ready.ready_at)
            first_dispatch = signals.wait_first_dispatch(case.plan.steps[0].delay + case.shutdown_timeout + case.kill_grace)
            if first_dispatch is None:
                handle.wait_exited(self.timer.kill_wait)
                return run.conclude(
                    False,
                    f"exited before the first signal was sent (Code: {handle.exit_code}, Signal: {handle.exit_signal})"
                    f"\nOutput tail:\n{handle.recent_output(OUTPUT_TAIL_LINES)}",
                    FailureKind.EARLY_EXIT,
                    handle=handle,
                )

            run.advance(CaseState.AWAITING_EXIT)
            kill_at = first_dispatch + case.shutdown_timeout + case.kill_grace
            result = self.timer.wait_for_exit(handle, since=first_dispatch, deadline=kill_at)
            signals.cancel()
            signals.join(timeout=1.0)
            verdict = self.timer.classify(result, case.shutdown_timeout)

            run.advance(CaseState.VERIFYING)
            passed = verdict.passed
            failure = verdict.failure
            details = [verdict.detail]
            if signals.skipped and isinstance(result, Exited):
                details.append(f"Skipped {len(signals.skipped)} signal(s) after exit")
            details.extend(notes)

            if case.resource_check is not None:
                check = self.verifier.verify(case.resource_check, handle)
                details.append(check.detail)
                if isinstance(check, Leaked):
                    passed = False
                    failure = failure or FailureKind.RESOURCE_LEAK

            return run.conclude(passed, "; ".join(details), failure, elapsed_ms=verdict.elapsed_ms, handle=handle)

        except Exception as e:
            if handle is not None and handle.is_running():
                handle.kill()
            return run.conclude(False, f"Exception: {e}", FailureKind.HARNESS_ERROR, handle=handle, force=True)

        finally:
            if signals is not None:
                signals.cancel()
            if handle is not None:
                self.launcher.release(handle)

    def _run_probe(self, case: TestCase, handle: ProcessHandle) -> str:
        patterns = case.resource_check.patterns if isinstance(case.resource_check, PortCheck) else DEFAULT_PORT_PATTERNS
        url = case.probe.render(discover_port(handle.output(), patterns))
        if url is None:
            return "HTTP probe skipped: no port announced"
        _, message = probe_http(url, case.probe.timeout)
        if self.verbose:
            print(f"[Orchestrator] {message}")
        return message
