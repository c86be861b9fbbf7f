"""
Signal Injector

Delivers a SignalPlan to one ProcessHandle. Delays are relative: the first
is measured from the Ready event, each later one from the previous dispatch.
Every wait is raced against the handle's exit event, so once the process is
observed to have exited the rest of the plan is abandoned and recorded as
skipped. Delivering to an exited process is a no-op.
"""

import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from shutdown_harness.launcher import ProcessHandle
from shutdown_harness.models import SignalKind, SignalPlan

# Upper bound on how long a cancel request can go unnoticed.
CANCEL_POLL_INTERVAL = 0.05


@dataclass
class Delivery:
    kind: SignalKind
    dispatched_at: Optional[float] = None
    delivered: bool = False
    skipped: bool = False


class SignalRun:
    """Progress of one plan against one process."""

    def __init__(self, plan: SignalPlan):
        self.plan = plan
        self.deliveries: List[Delivery] = [Delivery(step.kind) for step in plan.steps]
        self.first_dispatch_at: Optional[float] = None
        self._first_dispatch = threading.Event()
        self._cancelled = threading.Event()
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def delivered(self) -> List[Delivery]:
        return [d for d in self.deliveries if d.delivered]

    @property
    def skipped(self) -> List[Delivery]:
        return [d for d in self.deliveries if d.skipped]

    def wait_first_dispatch(self, timeout: Optional[float] = None) -> Optional[float]:
        """
        Block until the first signal is dispatched or the run ends.

        Returns the monotonic dispatch time, or None if nothing was sent.
        """
        self._first_dispatch.wait(timeout)
        return self.first_dispatch_at

    def cancel(self):
        self._cancelled.set()

    def attach(self, thread: threading.Thread):
        """Bind the thread delivering this run and start it."""
        self._thread = thread
        thread.start()

    def join(self, timeout: Optional[float] = None):
        if self._thread is not None:
            self._thread.join(timeout)
        else:
            self._done.wait(timeout)


class SignalInjector:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def execute(self, handle: ProcessHandle, plan: SignalPlan, ready_at: Optional[float] = None) -> SignalRun:
        """Deliver ``plan`` on the calling thread."""
        run = SignalRun(plan)
        self._run(run, handle, ready_at)
        return run

    def start(self, handle: ProcessHandle, plan: SignalPlan, ready_at: Optional[float] = None) -> SignalRun:
        """Deliver ``plan`` on a background thread."""
        run = SignalRun(plan)
        thread = threading.Thread(
            target=self._run,
            args=(run, handle, ready_at),
            name=f"signal-injector-{handle.pid}",
            daemon=True,
        )
        run.attach(thread)
        return run

    def _run(self, run: SignalRun, handle: ProcessHandle, ready_at: Optional[float]):
        previous = ready_at if ready_at is not None else time.monotonic()
        try:
            for index, step in enumerate(run.plan.steps):
                if not self._wait_until(run, handle, previous + step.delay):
                    self._skip_from(run, index, handle)
                    return

                delivery = run.deliveries[index]
                delivery.dispatched_at = time.monotonic()
                delivery.delivered = handle.send_signal(step.kind)
                previous = delivery.dispatched_at

                if not delivery.delivered:
                    # Exited between the wait and the dispatch
                    delivery.dispatched_at = None
                    self._skip_from(run, index, handle)
                    return

                if run.first_dispatch_at is None:
                    run.first_dispatch_at = delivery.dispatched_at
                    run._first_dispatch.set()
                if self.verbose:
                    print(f"[SignalInjector] Sent {step.kind.value} to PID={handle.pid}")
        finally:
            run._first_dispatch.set()
            run._done.set()

    def _wait_until(self, run: SignalRun, handle: ProcessHandle, when: float) -> bool:
        """Sleep until ``when``. False if the process exited or the run was cancelled."""
        while True:
            if run._cancelled.is_set():
                return False
            remaining = when - time.monotonic()
            if remaining <= 0:
                return not handle.exited.is_set()
            if handle.exited.wait(min(remaining, CANCEL_POLL_INTERVAL)):
                return False

    def _skip_from(self, run: SignalRun, index: int, handle: ProcessHandle):
        for delivery in run.deliveries[index:]:
            delivery.skipped = True
        if self.verbose and not run._cancelled.is_set():
            print(f"[SignalInjector] PID={handle.pid} exited, skipped {len(run.deliveries) - index} signal(s)")
