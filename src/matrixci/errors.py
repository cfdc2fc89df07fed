# errors.py
from __future__ import annotations

from dataclasses import dataclass


class ConfigurationError(ValueError):
    """
    The pipeline definition cannot be run as written.

    Raised for duplicate job names, unknown `needs`, dependency cycles,
    malformed matrices and unknown capability references. Always raised
    before any job instance starts.
    """


class PipelineLoadError(ConfigurationError):
    """Raised when a definition file cannot be read, parsed or validated."""


class InvalidTransition(RuntimeError):
    """An instance outcome tried to move backwards (or out of a terminal state)."""


class CacheError(RuntimeError):
    """A cache artifact exists but could not be restored."""


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    cause = "step"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class StepTimeout(StepFailure):
    timeout_s: float = 0.0

    cause = "timeout"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.timeout_s:.0f}s: {self.cmd}"


@dataclass
class EnvironmentFailure(Exception):
    """
    Workspace checkout or cache restore went wrong.

    Reported as a failure of an implicit setup step, so the operator sees it
    the same way as an ordinary command failure.
    """
    job: str
    step: str
    message: str

    cause = "environment"

    def __str__(self) -> str:
        return f"[{self.job}] {self.step} failed: {self.message}"
