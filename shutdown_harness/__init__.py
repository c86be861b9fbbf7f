"""Shutdown verification harness for long-running processes."""

from shutdown_harness.errors import ConfigError, HarnessError, LaunchError, ReadinessTimeout
from shutdown_harness.models import (
    ChildProcessCheck,
    ConfigOverride,
    FailureKind,
    HttpProbe,
    PortCheck,
    ReadinessRule,
    SignalKind,
    SignalPlan,
    SignalStep,
    TargetSpec,
    TestCase,
    TestOutcome,
    TestReport,
)
from shutdown_harness.orchestrator import Orchestrator

__version__ = "0.1.0"

__all__ = [
    "ChildProcessCheck",
    "ConfigError",
    "ConfigOverride",
    "FailureKind",
    "HarnessError",
    "HttpProbe",
    "LaunchError",
    "Orchestrator",
    "PortCheck",
    "ReadinessRule",
    "ReadinessTimeout",
    "SignalKind",
    "SignalPlan",
    "SignalStep",
    "TargetSpec",
    "TestCase",
    "TestOutcome",
    "TestReport",
]
