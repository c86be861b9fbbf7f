"""
Process Launcher

Spawns the target and owns it for the duration of one test case:
- Process-group scoped handles (new session on POSIX, new group on Windows)
- Line-by-line capture of stdout and stderr into one combined buffer
- Exit watcher thread recording the monotonic exit timestamp
- Readiness detection against the accumulated output
- Idempotent release with SIGTERM -> SIGKILL escalation for leftovers
"""

import json
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

from shutdown_harness.errors import LaunchError, ReadinessTimeout
from shutdown_harness.models import ConfigOverride, ReadinessRule, SignalKind, TargetSpec


class OutputCapture:
    """Thread-safe capture of a process's stdout and stderr."""

    def __init__(self, process: subprocess.Popen):
        self.process = process
        self.lines: List[str] = []
        self.cond = threading.Condition()
        self._threads: List[threading.Thread] = []
        self.open_streams = 0

    def start(self):
        """Start one reader thread per piped stream."""
        for name, stream in (("stdout", self.process.stdout), ("stderr", self.process.stderr)):
            if stream is None:
                continue
            thread = threading.Thread(
                target=self._read_loop,
                args=(stream,),
                name=f"capture-{name}-{self.process.pid}",
                daemon=True,
            )
            self.open_streams += 1
            self._threads.append(thread)
        for thread in self._threads:
            thread.start()

    def _read_loop(self, stream):
        try:
            for line in iter(stream.readline, ""):
                self._add_line(line.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            self._add_line(f"[CAPTURE ERROR] {e}")
        finally:
            with self.cond:
                self.open_streams -= 1
                self.cond.notify_all()

    def _add_line(self, line: str):
        with self.cond:
            self.lines.append(line)
            self.cond.notify_all()

    @property
    def drained(self) -> bool:
        """True once every stream reached EOF."""
        with self.cond:
            return self.open_streams == 0

    def get_all_output(self) -> str:
        with self.cond:
            return "\n".join(self.lines)

    def get_recent_output(self, num_lines: int = 50) -> str:
        with self.cond:
            return "\n".join(self.lines[-num_lines:])

    def stop(self, timeout: float = 2.0):
        """Wait for reader threads to hit EOF."""
        for thread in self._threads:
            thread.join(timeout=timeout)


class ConfigFile:
    """Writes a ConfigOverride and restores whatever was there before."""

    def __init__(self, override: ConfigOverride, cwd: Optional[str]):
        base = Path(cwd) if cwd else Path.cwd()
        self.path = base / override.path
        self.override = override
        self._backup: Optional[bytes] = None
        self._applied = False

    def apply(self):
        if self.path.exists():
            self._backup = self.path.read_bytes()
        if self.override.format == "yaml":
            text = yaml.safe_dump(dict(self.override.content), sort_keys=False)
        else:
            text = json.dumps(self.override.content, indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text, encoding="utf-8")
        self._applied = True

    def restore(self):
        if not self._applied:
            return
        if self._backup is not None:
            self.path.write_bytes(self._backup)
        elif self.path.exists():
            self.path.unlink()
        self._applied = False


@dataclass(frozen=True)
class Ready:
    marker: str
    ready_at: float  # time.monotonic()
    startup_ms: float


class ProcessHandle:
    """
    Live target process owned by the Launcher for one test case.

    ``exited`` is set by the watcher thread right after the OS reports the
    exit; ``exited_at`` is the monotonic time of that event.
    """

    def __init__(
        self,
        spec: TargetSpec,
        process: subprocess.Popen,
        process_group_id: int,
        capture: OutputCapture,
        started_at: float,
        config_file: Optional[ConfigFile] = None,
    ):
        self.spec = spec
        self.process = process
        self.process_group_id = process_group_id
        self.capture = capture
        self.started_at = started_at
        self.config_file = config_file
        self.exited = threading.Event()
        self.exited_at: Optional[float] = None
        self.released = False
        self._watcher = threading.Thread(target=self._watch_exit, name=f"exit-watcher-{process.pid}", daemon=True)

    def start_watcher(self):
        self._watcher.start()

    def _watch_exit(self):
        self.process.wait()
        self.exited_at = time.monotonic()
        self.exited.set()
        with self.capture.cond:
            self.capture.cond.notify_all()

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_running(self) -> bool:
        return not self.exited.is_set()

    @property
    def exit_code(self) -> Optional[int]:
        if not self.exited.is_set():
            return None
        rc = self.process.returncode
        return rc if rc is not None and rc >= 0 else None

    @property
    def exit_signal(self) -> Optional[str]:
        if not self.exited.is_set():
            return None
        rc = self.process.returncode
        if rc is None or rc >= 0:
            return None
        try:
            return signal.Signals(-rc).name
        except ValueError:
            return str(-rc)

    def wait_exited(self, timeout: Optional[float] = None) -> bool:
        return self.exited.wait(timeout)

    def send_signal(self, kind: SignalKind) -> bool:
        """
        Deliver ``kind`` to this process only.

        Returns False (and does nothing) if the process has already exited.
        """
        if self.exited.is_set():
            return False
        if kind is SignalKind.KILL:
            return self.kill()
        try:
            if sys.platform == "win32":
                # CTRL_BREAK is the only console event a process group can catch
                self.process.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                self.process.send_signal(kind.to_signal())
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> bool:
        """Forcefully kill this case's process group."""
        try:
            if sys.platform == "win32":
                self.process.kill()
            else:
                os.killpg(self.process_group_id, signal.SIGKILL)
        except ProcessLookupError:
            return False
        return True

    def group_alive(self) -> bool:
        return process_group_alive(self.process_group_id) if sys.platform != "win32" else self.is_running()

    def output(self) -> str:
        return self.capture.get_all_output()

    def recent_output(self, num_lines: int = 20) -> str:
        return self.capture.get_recent_output(num_lines)


class Launcher:
    """
    Starts targets and hands out ProcessHandles.

    Usage:
        launcher = Launcher()
        handle = launcher.launch(spec)
        try:
            launcher.await_readiness(handle, rule, timeout=5.0)
            # ... signal the target ...
        finally:
            launcher.release(handle)
    """

    def __init__(self, verbose: bool = False, release_grace: float = 2.0):
        self.verbose = verbose
        self.release_grace = release_grace

    def launch(self, spec: TargetSpec) -> ProcessHandle:
        if spec.cwd and not Path(spec.cwd).is_dir():
            raise LaunchError(f"Working directory does not exist: {spec.cwd}")

        config_file = None
        if spec.config_override is not None:
            config_file = ConfigFile(spec.config_override, spec.cwd)
            try:
                config_file.apply()
            except OSError as e:
                raise LaunchError(f"Failed to write config override {config_file.path}: {e}") from e

        env = dict(os.environ)
        env.update(spec.env)

        try:
            if sys.platform == "win32":
                process = subprocess.Popen(
                    spec.command,
                    cwd=spec.cwd,
                    env=env,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
                )
                pgid = process.pid
            else:
                process = subprocess.Popen(
                    spec.command,
                    cwd=spec.cwd,
                    env=env,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
                pgid = os.getpgid(process.pid)
        except OSError as e:
            if config_file is not None:
                config_file.restore()
            raise LaunchError(f"Failed to start {spec.executable}: {e}") from e

        capture = OutputCapture(process)
        handle = ProcessHandle(spec, process, pgid, capture, time.monotonic(), config_file)
        capture.start()
        handle.start_watcher()

        if self.verbose:
            print(f"[Launcher] Started {' '.join(spec.command)} PID={process.pid} PGID={pgid}")
        return handle

    def await_readiness(self, handle: ProcessHandle, rule: ReadinessRule, timeout: float) -> Ready:
        """
        Block until ``rule`` matches the combined output.

        Raises ReadinessTimeout if ``timeout`` elapses first or the process
        exits without ever matching. The process is left as it is.
        """
        deadline = time.monotonic() + timeout
        capture = handle.capture
        with capture.cond:
            while True:
                marker = rule.match("\n".join(capture.lines))
                if marker is not None:
                    now = time.monotonic()
                    if self.verbose:
                        print(f"[Launcher] PID={handle.pid} ready (matched {marker!r})")
                    return Ready(marker, now, (now - handle.started_at) * 1000.0)
                if handle.exited.is_set() and capture.open_streams == 0:
                    raise ReadinessTimeout(
                        f"process exited before printing {rule.describe()}",
                        exited=True,
                    )
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ReadinessTimeout(f"no {rule.describe()} within {timeout:.1f}s")
                capture.cond.wait(min(remaining, 0.1))

    def release(self, handle: ProcessHandle):
        """
        Tear down everything the handle owns. Safe to call twice.

        1. SIGTERM the process group if anything in it is still alive
        2. Wait up to ``release_grace`` seconds, then SIGKILL the group
        3. Stop output capture and restore any config override
        """
        if handle.released:
            return
        handle.released = True

        if handle.group_alive():
            if self.verbose:
                print(f"[Launcher] Cleaning up PGID={handle.process_group_id}")
            try:
                if sys.platform == "win32":
                    handle.process.send_signal(signal.CTRL_BREAK_EVENT)
                else:
                    os.killpg(handle.process_group_id, signal.SIGTERM)
            except ProcessLookupError:
                pass

            deadline = time.monotonic() + self.release_grace
            while handle.group_alive() and time.monotonic() < deadline:
                time.sleep(0.05)
            if handle.group_alive():
                handle.kill()

        handle.exited.wait(timeout=2.0)
        if handle.process.stdin:
            try:
                handle.process.stdin.close()
            except OSError:
                pass
        handle.capture.stop()
        if handle.config_file is not None:
            handle.config_file.restore()


def process_group_alive(pgid: int) -> bool:
    """Signal 0 to the group: succeeds while any member still exists."""
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
