"""Shared pytest configuration for the shutdown harness suites."""

from __future__ import annotations

import socket

import pytest

from shutdown_harness.launcher import Launcher, ProcessHandle
from shutdown_harness.models import ReadinessRule
from shutdown_harness.orchestrator import Orchestrator
from tests.support.targets import READY_TEXT, target_spec


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return int(sock.getsockname()[1])


@pytest.fixture
def unique_port() -> int:
    return _pick_free_port()


@pytest.fixture
def launcher() -> Launcher:
    return Launcher(release_grace=1.0)


@pytest.fixture
def launch_target(launcher: Launcher):
    """Launch the dummy target, optionally waiting for readiness; releases every handle on teardown."""
    started: list[ProcessHandle] = []

    def _start(*args: str, ready: bool = True, timeout: float = 5.0) -> ProcessHandle:
        handle = launcher.launch(target_spec(*args))
        started.append(handle)
        if ready:
            launcher.await_readiness(handle, ReadinessRule(substrings=(READY_TEXT,)), timeout)
        return handle

    yield _start

    for handle in reversed(started):
        launcher.release(handle)


@pytest.fixture
def orchestrator_factory():
    def _build(cases, **kwargs) -> Orchestrator:
        kwargs.setdefault("inter_case_delay", 0.0)
        return Orchestrator(cases, **kwargs)

    return _build
