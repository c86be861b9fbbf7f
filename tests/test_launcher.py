"""Launcher: process start, readiness detection, signal delivery and release."""

from __future__ import annotations

import json
import os
import sys

import pytest

from shutdown_harness.errors import LaunchError, ReadinessTimeout
from shutdown_harness.launcher import Launcher, process_group_alive
from shutdown_harness.models import ConfigOverride, ReadinessRule, SignalKind, TargetSpec
from tests.support.targets import READY_TEXT, target_spec

pytestmark = [pytest.mark.integration, pytest.mark.timeout(30)]

READY = ReadinessRule(substrings=(READY_TEXT,))


def test_missing_executable_raises_launch_error(launcher: Launcher, tmp_path):
    with pytest.raises(LaunchError):
        launcher.launch(TargetSpec(str(tmp_path / "does-not-exist")))


def test_missing_working_directory(launcher: Launcher, tmp_path):
    with pytest.raises(LaunchError):
        launcher.launch(target_spec(cwd=str(tmp_path / "missing")))


def test_readiness_reports_marker_and_startup_time(launcher: Launcher):
    handle = launcher.launch(target_spec("--startup-delay", "0.3"))
    try:
        ready = launcher.await_readiness(handle, READY, timeout=5.0)
        assert ready.marker == READY_TEXT
        assert ready.startup_ms >= 250.0
        assert handle.is_running()
    finally:
        launcher.release(handle)


def test_readiness_matches_pattern(launcher: Launcher):
    handle = launcher.launch(target_spec("--listen"))
    try:
        ready = launcher.await_readiness(handle, ReadinessRule(pattern=r"port[:]\s*\d+"), timeout=5.0)
        assert ready.marker.startswith("port:")
    finally:
        launcher.release(handle)


def test_readiness_timeout_leaves_process_running(launcher: Launcher):
    handle = launcher.launch(target_spec("--never-ready"))
    try:
        with pytest.raises(ReadinessTimeout) as excinfo:
            launcher.await_readiness(handle, READY, timeout=0.5)
        assert not excinfo.value.exited
        assert handle.is_running()
    finally:
        launcher.release(handle)
    assert not handle.is_running()


def test_exit_before_readiness_is_reported_early(launcher: Launcher):
    handle = launcher.launch(TargetSpec(sys.executable, ("-c", "print('booting')")))
    try:
        with pytest.raises(ReadinessTimeout) as excinfo:
            launcher.await_readiness(handle, READY, timeout=5.0)
        assert excinfo.value.exited
        assert "booting" in handle.output()
    finally:
        launcher.release(handle)


def test_signal_to_exited_process_is_noop(launch_target):
    handle = launch_target()
    assert handle.send_signal(SignalKind.TERMINATE)
    assert handle.wait_exited(5.0)

    assert handle.send_signal(SignalKind.TERMINATE) is False
    assert handle.send_signal(SignalKind.INTERRUPT) is False
    assert handle.exit_code == 0
    assert handle.exit_signal is None
    assert "Signal received: SIGTERM" in handle.output()


def test_exit_code_is_reported(launch_target):
    handle = launch_target("--exit-code", "4")
    handle.send_signal(SignalKind.INTERRUPT)
    assert handle.wait_exited(5.0)
    assert handle.exit_code == 4
    assert "Signal received: SIGINT" in handle.output()


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")
def test_release_is_idempotent_and_kills_group(launcher: Launcher):
    handle = launcher.launch(target_spec("--ignore-signals"))
    launcher.await_readiness(handle, READY, timeout=5.0)
    pgid = handle.process_group_id
    assert pgid != os.getpgid(0)

    launcher.release(handle)
    launcher.release(handle)

    assert handle.released
    assert not handle.is_running()
    assert not process_group_alive(pgid)


def test_config_override_is_restored(launcher: Launcher, tmp_path):
    config_path = tmp_path / "app.config.json"
    config_path.write_text('{"original": true}', encoding="utf-8")
    override = ConfigOverride("app.config.json", {"enableExtensions": True})

    handle = launcher.launch(target_spec(cwd=str(tmp_path), config_override=override))
    try:
        launcher.await_readiness(handle, READY, timeout=5.0)
        assert json.loads(config_path.read_text(encoding="utf-8")) == {"enableExtensions": True}
    finally:
        launcher.release(handle)

    assert json.loads(config_path.read_text(encoding="utf-8")) == {"original": True}


def test_new_config_override_is_removed(launcher: Launcher, tmp_path):
    override = ConfigOverride("conf/app.yaml", {"mode": "cloud"}, format="yaml")

    handle = launcher.launch(target_spec(cwd=str(tmp_path), config_override=override))
    try:
        launcher.await_readiness(handle, READY, timeout=5.0)
        assert (tmp_path / "conf" / "app.yaml").read_text(encoding="utf-8").strip() == "mode: cloud"
    finally:
        launcher.release(handle)

    assert not (tmp_path / "conf" / "app.yaml").exists()
