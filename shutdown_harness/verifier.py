"""
Resource Verifier

Post-exit checks that the target let go of what it held:
- PortCheck: bind a listener to the port; a bind failure counts as a leak
- ChildProcessCheck: the target's process group must drain within a grace period

Port results are racy against OS socket linger. A bind failure is always
reported as Leaked and never retried, since no backoff is right on every
platform. A wildcard IPv4 host is also checked on the IPv6 wildcard when the
platform has IPv6, so a listener left on "::" alone is still caught.
"""

import errno
import socket
import sys
from dataclasses import dataclass
from typing import Optional, Union

from shutdown_harness.errors import HarnessError
from shutdown_harness.helpers import wait_for_condition
from shutdown_harness.launcher import ProcessHandle
from shutdown_harness.models import ChildProcessCheck, PortCheck, ResourceCheck, discover_port


@dataclass(frozen=True)
class Verified:
    detail: str


@dataclass(frozen=True)
class Leaked:
    detail: str


Verdict = Union[Verified, Leaked]


class ResourceVerifier:
    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def verify(self, check: ResourceCheck, handle: ProcessHandle) -> Verdict:
        if isinstance(check, PortCheck):
            verdict = self.verify_port(check, handle.output())
        elif isinstance(check, ChildProcessCheck):
            verdict = self.verify_children(check, handle)
        else:
            raise HarnessError(f"Unsupported resource check: {check!r}")

        if self.verbose:
            print(f"[ResourceVerifier] {type(verdict).__name__}: {verdict.detail}")
        return verdict

    def verify_port(self, check: PortCheck, output: str) -> Verdict:
        port = check.port if check.port is not None else discover_port(output, check.patterns)
        if port is None:
            return Verified("No port announced in output, nothing to release")

        for family, host in self._bind_targets(check.host):
            error = self._try_bind(family, host, port)
            if error is not None:
                return Leaked(f"Port {port} still in use after shutdown ({error})")
        return Verified(f"Port {port} properly released")

    @staticmethod
    def _bind_targets(host: str):
        targets = [(socket.AF_INET6 if ":" in host else socket.AF_INET, host)]
        if host == "0.0.0.0" and socket.has_ipv6:
            targets.append((socket.AF_INET6, "::"))
        return targets

    @staticmethod
    def _try_bind(family, host: str, port: int) -> Optional[str]:
        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError:
            # IPv6 compiled in but disabled on this host
            return None
        with sock:
            if sys.platform != "win32":
                # Lingering TIME_WAIT sockets must not block the bind
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            try:
                sock.bind((host, port))
                sock.listen(1)
            except OSError as e:
                if family == socket.AF_INET6 and e.errno == errno.EADDRNOTAVAIL:
                    return None
                return str(e.strerror or e)
        return None

    def verify_children(self, check: ChildProcessCheck, handle: ProcessHandle) -> Verdict:
        if sys.platform == "win32":
            return Verified("Child-process check not supported on Windows")

        pgid = handle.process_group_id
        if wait_for_condition(lambda: not handle.group_alive(), timeout=check.grace, interval=0.05):
            return Verified(f"No descendant processes left in group {pgid}")
        return Leaked(f"Descendant processes still running in group {pgid} {check.grace:.1f}s after exit")
