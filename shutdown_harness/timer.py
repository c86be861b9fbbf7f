"""
Shutdown Timer & Classifier

Measures the interval from the first dispatched signal to the process-exit
event and classifies it against the case's shutdown timeout. A slow exit
and a missing exit are different failures: the first is reported as
Exited with passed=False, the second as TimedOut after a forced kill.
"""

import time
from dataclasses import dataclass
from typing import Optional, Union

from shutdown_harness.launcher import ProcessHandle
from shutdown_harness.models import FailureKind

FORCED_KILL_DETAIL = "forced kill required"


@dataclass(frozen=True)
class Exited:
    exit_code: Optional[int]
    exit_signal: Optional[str]
    elapsed_ms: float


@dataclass(frozen=True)
class TimedOut:
    waited_ms: float
    killed: bool


ExitResult = Union[Exited, TimedOut]


@dataclass(frozen=True)
class Classification:
    passed: bool
    elapsed_ms: Optional[float]
    failure: Optional[FailureKind]
    detail: str


class ShutdownTimer:
    def __init__(self, verbose: bool = False, kill_wait: float = 2.0):
        self.verbose = verbose
        self.kill_wait = kill_wait

    def wait_for_exit(self, handle: ProcessHandle, since: float, deadline: float) -> ExitResult:
        """
        Wait for the process to exit until the monotonic ``deadline``.

        ``since`` is the dispatch time of the first signal. On timeout the
        handle is force-killed before returning TimedOut.
        """
        if handle.wait_exited(max(0.0, deadline - time.monotonic())):
            return Exited(
                exit_code=handle.exit_code,
                exit_signal=handle.exit_signal,
                elapsed_ms=(handle.exited_at - since) * 1000.0,
            )

        waited_ms = (time.monotonic() - since) * 1000.0
        if self.verbose:
            print(f"[ShutdownTimer] PID={handle.pid} still running after {waited_ms:.0f}ms, sending SIGKILL")
        killed = handle.kill()
        handle.wait_exited(self.kill_wait)
        return TimedOut(waited_ms=waited_ms, killed=killed)

    def classify(self, result: ExitResult, shutdown_timeout: float) -> Classification:
        limit_ms = shutdown_timeout * 1000.0
        if isinstance(result, TimedOut):
            return Classification(
                passed=False,
                elapsed_ms=None,
                failure=FailureKind.SHUTDOWN_TIMEOUT,
                detail=f"Timeout - {FORCED_KILL_DETAIL} (no exit within {result.waited_ms:.0f}ms)",
            )

        detail = f"Shutdown time: {result.elapsed_ms:.0f}ms, Code: {result.exit_code}, Signal: {result.exit_signal}"
        if result.elapsed_ms < limit_ms:
            return Classification(True, result.elapsed_ms, None, detail)
        return Classification(
            passed=False,
            elapsed_ms=result.elapsed_ms,
            failure=FailureKind.SLOW_EXIT,
            detail=f"{detail} (exceeded {limit_ms:.0f}ms)",
        )
