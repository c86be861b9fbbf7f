"""
Shutdown Harness Data Model

Immutable descriptions of what to launch and how to stop it, plus the
outcome/report types produced by a run:
- TargetSpec / ConfigOverride: how the target process is started
- ReadinessRule: textual marker proving the target finished starting
- SignalPlan: authored sequence of voluntary termination signals
- PortCheck / ChildProcessCheck: post-exit resource release checks
- TestCase: one shutdown scenario, read-only during execution
- TestOutcome / TestReport: per-case result and the ordered run report
"""

from __future__ import annotations

import re
import signal
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from shutdown_harness.errors import ConfigError, HarnessError

# Markers a typical app server prints once it is listening.
DEFAULT_READY_MARKERS = ("available at", "port")

# Patterns used to discover a listening port from target output.
DEFAULT_PORT_PATTERNS = (
    r"(?i)port[:]\s*(\d+)",
    r"available at.*:(\d+)",
)


class SignalKind(Enum):
    """Termination signals the harness knows how to deliver."""

    INTERRUPT = "SIGINT"
    TERMINATE = "SIGTERM"
    KILL = "SIGKILL"

    @property
    def voluntary(self) -> bool:
        return self is not SignalKind.KILL

    def to_signal(self) -> signal.Signals:
        return getattr(signal, self.value)

    @classmethod
    def parse(cls, name: str) -> "SignalKind":
        """Accept "SIGTERM", "TERM", "terminate" and friends."""
        key = str(name).strip().upper()
        aliases = {
            "SIGINT": cls.INTERRUPT,
            "INT": cls.INTERRUPT,
            "INTERRUPT": cls.INTERRUPT,
            "SIGTERM": cls.TERMINATE,
            "TERM": cls.TERMINATE,
            "TERMINATE": cls.TERMINATE,
            "SIGKILL": cls.KILL,
            "KILL": cls.KILL,
        }
        try:
            return aliases[key]
        except KeyError:
            raise ConfigError(f"Unknown signal: {name!r}") from None


@dataclass(frozen=True)
class SignalStep:
    kind: SignalKind
    delay: float = 0.0  # seconds since the previous event

    def __post_init__(self):
        if self.delay < 0:
            raise ConfigError(f"Signal delay must be >= 0, got {self.delay}")


@dataclass(frozen=True)
class SignalPlan:
    """
    Ordered signals to deliver once the target is ready.

    Each delay is relative: the first is measured from the Ready event,
    later ones from the previous dispatch. Authored plans exercise voluntary
    shutdown only, so KILL is rejected here; the harness introduces KILL
    itself when a shutdown times out.
    """

    steps: Tuple[SignalStep, ...]

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ConfigError("Signal plan must contain at least one signal")
        for step in self.steps:
            if not step.kind.voluntary:
                raise ConfigError("KILL cannot be part of an authored signal plan")

    @classmethod
    def of(cls, *steps: Tuple[Union[str, SignalKind], float]) -> "SignalPlan":
        """Build a plan from (signal, delay) pairs."""
        built = []
        for kind, delay in steps:
            if not isinstance(kind, SignalKind):
                kind = SignalKind.parse(kind)
            built.append(SignalStep(kind, float(delay)))
        return cls(tuple(built))

    @property
    def total_delay(self) -> float:
        return sum(step.delay for step in self.steps)

    def describe(self) -> str:
        return ", ".join(f"{s.kind.value}+{s.delay * 1000:.0f}ms" for s in self.steps)


@dataclass(frozen=True)
class ReadinessRule:
    """
    Predicate over the accumulated stdout+stderr text of the target.

    Ready when any substring is present or the regex matches.
    """

    substrings: Tuple[str, ...] = ()
    pattern: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "substrings", tuple(self.substrings))
        if not self.substrings and not self.pattern:
            raise ConfigError("Readiness rule needs a substring or a pattern")
        if self.pattern:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ConfigError(f"Invalid readiness pattern {self.pattern!r}: {e}") from e

    def match(self, text: str) -> Optional[str]:
        """Return the marker that matched, or None."""
        for marker in self.substrings:
            if marker in text:
                return marker
        if self.pattern:
            found = re.search(self.pattern, text)
            if found:
                return found.group(0)
        return None

    def describe(self) -> str:
        parts = [repr(s) for s in self.substrings]
        if self.pattern:
            parts.append(f"/{self.pattern}/")
        return " or ".join(parts)


def discover_port(text: str, patterns: Sequence[str] = DEFAULT_PORT_PATTERNS) -> Optional[int]:
    """Find the first port number announced in target output."""
    for pattern in patterns:
        found = re.search(pattern, text)
        if not found:
            continue
        groups = [g for g in found.groups() if g]
        if groups:
            return int(groups[0])
    return None


@dataclass(frozen=True)
class ConfigOverride:
    """Config file written into the target's working directory for one case."""

    path: str
    content: Mapping[str, Any]
    format: str = "json"

    def __post_init__(self):
        if self.format not in ("json", "yaml"):
            raise ConfigError(f"Config override format must be json or yaml, got {self.format!r}")


@dataclass(frozen=True)
class TargetSpec:
    executable: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    config_override: Optional[ConfigOverride] = None

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        if not self.executable:
            raise ConfigError("Target executable must not be empty")

    @property
    def command(self) -> List[str]:
        return [str(self.executable), *self.args]


@dataclass(frozen=True)
class PortCheck:
    """
    Port must be bindable once the target has exited.

    Uses ``port`` when given, otherwise the first port discovered in the
    target output with ``patterns``.
    """

    port: Optional[int] = None
    patterns: Tuple[str, ...] = DEFAULT_PORT_PATTERNS
    host: str = "0.0.0.0"

    def __post_init__(self):
        object.__setattr__(self, "patterns", tuple(self.patterns))
        if self.port is not None and not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port: {self.port}")


@dataclass(frozen=True)
class ChildProcessCheck:
    """The target's process group must be empty after it exits."""

    grace: float = 1.0


ResourceCheck = Union[PortCheck, ChildProcessCheck]


@dataclass(frozen=True)
class HttpProbe:
    """HTTP request sent after readiness and before the first signal."""

    url: str = "http://localhost:{port}/"
    timeout: float = 2.0

    def render(self, port: Optional[int]) -> Optional[str]:
        if "{port}" in self.url:
            if port is None:
                return None
            return self.url.replace("{port}", str(port))
        return self.url


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    name: str
    target: TargetSpec
    readiness: ReadinessRule
    plan: SignalPlan
    startup_timeout: float = 5.0
    shutdown_timeout: float = 10.0
    resource_check: Optional[ResourceCheck] = None
    probe: Optional[HttpProbe] = None
    description: str = ""
    kill_grace: float = 0.0  # seconds past shutdown_timeout before the forced kill

    def __post_init__(self):
        if not self.name:
            raise ConfigError("Test case name must not be empty")
        if self.startup_timeout <= 0:
            raise ConfigError(f"{self.name}: startup_timeout must be positive")
        if self.shutdown_timeout <= 0:
            raise ConfigError(f"{self.name}: shutdown_timeout must be positive")
        if self.kill_grace < 0:
            raise ConfigError(f"{self.name}: kill_grace must be >= 0")


class FailureKind(Enum):
    LAUNCH_ERROR = "launch_error"
    NOT_READY = "not_ready"
    EARLY_EXIT = "early_exit"
    SHUTDOWN_TIMEOUT = "shutdown_timeout"
    SLOW_EXIT = "slow_exit"
    RESOURCE_LEAK = "resource_leak"
    HARNESS_ERROR = "harness_error"


class CaseState(Enum):
    PENDING = "pending"
    LAUNCHING = "launching"
    AWAITING_READY = "awaiting_ready"
    SIGNAL_PHASE = "signal_phase"
    AWAITING_EXIT = "awaiting_exit"
    VERIFYING = "verifying"
    CONCLUDED = "concluded"


CASE_TRANSITIONS: Dict[CaseState, Tuple[CaseState, ...]] = {
    CaseState.PENDING: (CaseState.LAUNCHING,),
    CaseState.LAUNCHING: (CaseState.AWAITING_READY, CaseState.CONCLUDED),
    CaseState.AWAITING_READY: (CaseState.SIGNAL_PHASE, CaseState.CONCLUDED),
    CaseState.SIGNAL_PHASE: (CaseState.AWAITING_EXIT, CaseState.CONCLUDED),
    CaseState.AWAITING_EXIT: (CaseState.VERIFYING,),
    CaseState.VERIFYING: (CaseState.CONCLUDED,),
    CaseState.CONCLUDED: (),
}


@dataclass(frozen=True)
class TestOutcome:
    __test__ = False

    case_name: str
    passed: bool
    elapsed_ms: Optional[float]
    exit_code: Optional[int]
    exit_signal: Optional[str]
    details: str
    failure: Optional[FailureKind] = None
    states: Tuple[CaseState, ...] = ()
    output: str = ""


class TestReport:
    """
    Append-only, ordered collection of outcomes for one harness run.

    Owned by the orchestrator run that created it; read-only once finalized.
    """

    __test__ = False

    def __init__(self):
        self._outcomes: List[TestOutcome] = []
        self._finalized = False

    def append(self, outcome: TestOutcome):
        if self._finalized:
            raise HarnessError("TestReport is finalized")
        self._outcomes.append(outcome)

    def finalize(self) -> "TestReport":
        self._finalized = True
        return self

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def outcomes(self) -> Tuple[TestOutcome, ...]:
        return tuple(self._outcomes)

    @property
    def passed(self) -> int:
        return sum(1 for o in self._outcomes if o.passed)

    @property
    def failed(self) -> int:
        return len(self._outcomes) - self.passed

    @property
    def total(self) -> int:
        return len(self._outcomes)

    def failures(self) -> List[TestOutcome]:
        return [o for o in self._outcomes if not o.passed]

    def names(self) -> List[str]:
        return [o.case_name for o in self._outcomes]

    def __iter__(self) -> Iterator[TestOutcome]:
        return iter(tuple(self._outcomes))

    def __len__(self) -> int:
        return len(self._outcomes)
