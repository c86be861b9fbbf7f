"""Signal injector scheduling and skip-after-exit behavior."""

from __future__ import annotations

import threading
import time

import pytest

from shutdown_harness.injector import SignalInjector, SignalRun
from shutdown_harness.models import SignalKind, SignalPlan

pytestmark = [pytest.mark.integration, pytest.mark.timeout(30)]

RAPID = SignalPlan.of(
    (SignalKind.TERMINATE, 0.0),
    (SignalKind.TERMINATE, 0.1),
    (SignalKind.INTERRUPT, 0.1),
)


def test_rapid_signals_after_exit_are_skipped(launch_target):
    handle = launch_target()

    run = SignalInjector().execute(handle, RAPID)

    assert run.done
    assert [d.delivered for d in run.deliveries] == [True, False, False]
    assert [d.skipped for d in run.deliveries] == [False, True, True]
    assert run.first_dispatch_at == run.deliveries[0].dispatched_at
    assert handle.wait_exited(5.0)
    assert handle.output().count("Signal received") == 1


def test_all_signals_delivered_while_target_lingers(launch_target):
    handle = launch_target("--exit-delay", "1.0")

    run = SignalInjector().execute(handle, RAPID)

    assert [d.delivered for d in run.deliveries] == [True, True, True]
    assert not run.skipped
    gaps = [b.dispatched_at - a.dispatched_at for a, b in zip(run.deliveries, run.deliveries[1:])]
    assert all(gap >= 0.09 for gap in gaps)
    assert handle.wait_exited(5.0)
    output = handle.output()
    assert "Signal received: SIGTERM" in output
    assert "Signal received: SIGINT" in output


def test_first_delay_is_relative_to_ready(launch_target):
    handle = launch_target()
    ready_at = time.monotonic()

    run = SignalInjector().start(handle, SignalPlan.of((SignalKind.TERMINATE, 0.3)), ready_at=ready_at)
    first = run.wait_first_dispatch(timeout=5.0)
    run.join(timeout=5.0)

    assert first is not None
    assert first - ready_at >= 0.29
    assert run.done


def test_cancel_stops_pending_signals(launch_target):
    handle = launch_target()

    run = SignalInjector().start(handle, SignalPlan.of((SignalKind.TERMINATE, 5.0)))
    run.cancel()
    run.join(timeout=2.0)

    assert run.done
    assert run.wait_first_dispatch(timeout=0) is None
    assert run.deliveries[0].skipped
    assert handle.is_running()


def test_nothing_sent_to_exited_process(launch_target):
    handle = launch_target()
    handle.send_signal(SignalKind.TERMINATE)
    assert handle.wait_exited(5.0)

    run = SignalInjector().execute(handle, SignalPlan.of((SignalKind.INTERRUPT, 0.0)))

    assert run.first_dispatch_at is None
    assert run.delivered == []
    assert len(run.skipped) == 1


def test_join_waits_for_delivery_thread(launch_target):
    handle = launch_target("--exit-delay", "0.5")

    run = SignalInjector().start(handle, SignalPlan.of((SignalKind.TERMINATE, 0.2), (SignalKind.INTERRUPT, 0.1)))
    run.join(timeout=5.0)

    assert run.done
    assert [d.delivered for d in run.deliveries] == [True, True]
    assert handle.wait_exited(5.0)


def test_attach_starts_thread():
    run = SignalRun(SignalPlan.of((SignalKind.TERMINATE, 0.0)))
    ran = threading.Event()

    run.attach(threading.Thread(target=ran.set, daemon=True))
    run.join(timeout=2.0)

    assert ran.is_set()
