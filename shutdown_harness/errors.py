"""
Harness Error Taxonomy

Only configuration problems and an unusable target binary abort a run.
Everything else is caught inside its case and folded into a TestOutcome.
"""


class HarnessError(Exception):
    """Base class for harness errors."""


class ConfigError(HarnessError):
    """Invalid case definition or cases file."""


class LaunchError(HarnessError):
    """The target executable could not be started."""


class ReadinessTimeout(HarnessError):
    """The target never printed its readiness marker."""

    def __init__(self, message: str, exited: bool = False):
        super().__init__(message)
        self.exited = exited
