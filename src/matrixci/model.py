# model.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from .errors import ConfigurationError, InvalidTransition

if TYPE_CHECKING:
    from .triggers import RunDecision


class EventKind(str, Enum):
    CALL = "workflow_call"
    DISPATCH = "workflow_dispatch"
    PUSH = "push"
    PULL_REQUEST = "pull_request"

    @classmethod
    def parse(cls, value: "str | EventKind") -> "EventKind":
        if isinstance(value, EventKind):
            return value
        key = str(value).strip().lower()
        alias = _EVENT_ALIASES.get(key, key)
        try:
            return cls(alias)
        except ValueError:
            known = sorted({k.value for k in cls} | set(_EVENT_ALIASES))
            raise ConfigurationError(f"Unknown event kind {value!r}. Known: {known}") from None


_EVENT_ALIASES = {
    "call": "workflow_call",
    "manual-call": "workflow_call",
    "dispatch": "workflow_dispatch",
    "manual-dispatch": "workflow_dispatch",
    "pull-request": "pull_request",
    "pr": "pull_request",
}


@dataclass(frozen=True)
class TriggerRule:
    """Which events start a run. An empty branch filter matches any branch."""
    kind: EventKind
    branches: tuple[str, ...] = ()


@dataclass(frozen=True)
class Event:
    kind: EventKind
    branch_ref: str = ""
    sha: str | None = None
    is_reusable_call: bool = False

    @property
    def branch(self) -> str:
        ref = self.branch_ref
        for prefix in ("refs/heads/", "refs/tags/"):
            if ref.startswith(prefix):
                return ref[len(prefix):]
        return ref


@dataclass(frozen=True)
class Step:
    """
    One unit of work inside a job.

    Either a literal shell command (`run`) or a reference to a reusable
    capability (`uses`, e.g. "checkout" or "toolchain@v1") with string inputs.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    inputs: Dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ConfigurationError(f"Step {self.name!r} must set exactly one of 'run' or 'uses'")

    @property
    def capability(self) -> str | None:
        """Capability name with any owner prefix and @version stripped."""
        if self.uses is None:
            return None
        ref = self.uses.split("@", 1)[0]
        return ref.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class MatrixSpec:
    axes: Dict[str, tuple[str, ...]]
    fail_fast: bool = True
    # axis -> values whose instances may fail without failing the run
    continue_on_error: Dict[str, tuple[str, ...]] = field(default_factory=dict)

    def allows_failure(self, binding: Dict[str, str]) -> bool:
        return any(binding.get(axis) in values for axis, values in self.continue_on_error.items())


@dataclass(frozen=True)
class CacheSpec:
    paths: tuple[str, ...] = ("target",)
    lock_files: tuple[str, ...] = ("Cargo.lock",)
    enabled: bool = True
    keep: int = 3


@dataclass
class JobTemplate:
    """
    A CI job as declared: steps + dependencies + matrix + cache settings.

    `name` is the unique key used by `needs`; `display_name` may contain
    `${{ matrix.<axis> }}` placeholders.
    """
    name: str
    steps: List[Step]
    display_name: Optional[str] = None
    runs_on: str = "host"
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    matrix: Optional[MatrixSpec] = None
    cache: Optional[CacheSpec] = None
    toolchain: Optional[str] = None
    timeout_minutes: Optional[float] = None


@dataclass
class PipelineDefinition:
    name: str
    jobs: List[JobTemplate]
    triggers: List[TriggerRule] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        names = [j.name for j in self.jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError(f"Duplicate job names found: {dupes}")

    @property
    def jobs_by_name(self) -> Dict[str, JobTemplate]:
        return {j.name: j for j in self.jobs}


@dataclass(frozen=True)
class JobInstance:
    """A JobTemplate bound to one combination of matrix axis values."""
    template: JobTemplate = field(repr=False, compare=False)
    index: int
    binding: Dict[str, str]
    name: str
    runs_on: str
    steps: tuple[Step, ...]
    env: Dict[str, str]

    @property
    def job(self) -> str:
        return self.template.name

    @property
    def id(self) -> str:
        if self.template.matrix is None:
            return self.template.name
        values = ",".join(f"{k}={v}" for k, v in self.binding.items())
        return f"{self.template.name}[{values}]"

    @property
    def fail_fast(self) -> bool:
        return self.template.matrix.fail_fast if self.template.matrix else True

    @property
    def continue_on_error(self) -> bool:
        m = self.template.matrix
        return bool(m and m.allows_failure(self.binding))


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


@dataclass
class StepResult:
    name: str
    status: JobStatus
    exit_code: int | None = None
    duration_s: float = 0.0
    output: str = ""


@dataclass
class InstanceResult:
    """Outcome of one JobInstance. Status only ever moves forward."""
    instance: JobInstance
    status: JobStatus = JobStatus.PENDING
    cause: str | None = None
    message: str | None = None
    failed_step: str | None = None
    steps: List[StepResult] = field(default_factory=list)
    cache: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def _move(self, new: JobStatus) -> None:
        if new not in _TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(f"{self.instance.id}: {self.status.value} -> {new.value}")
        self.status = new

    def start(self) -> None:
        self._move(JobStatus.RUNNING)
        self.started_at = time.monotonic()

    def finish(
        self,
        status: JobStatus,
        *,
        cause: str | None = None,
        failed_step: str | None = None,
        message: str | None = None,
    ) -> None:
        self._move(status)
        self.cause = cause
        self.failed_step = failed_step
        self.message = message
        self.finished_at = time.monotonic()

    def skip(self, cause: str, message: str) -> None:
        self._move(JobStatus.SKIPPED)
        self.cause = cause
        self.message = message

    def cancel(self, message: str) -> None:
        self._move(JobStatus.CANCELLED)
        self.cause = "fail-fast"
        self.message = message

    @property
    def duration_s(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def allowed_failure(self) -> bool:
        return self.status is JobStatus.FAILED and self.instance.continue_on_error


@dataclass
class RunRecord:
    """
    Append-only log of instance outcomes for one run.

    Each instance appends exactly once; appends may come from worker threads.
    """
    run_id: str
    event: Event
    decision: "RunDecision"
    results: List[InstanceResult] = field(default_factory=list)
    status: str | None = None
    # job name -> (stage index, declaration index), used for report ordering
    order: Dict[str, tuple[int, int]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def append(self, result: InstanceResult) -> None:
        if not result.status.terminal:
            raise InvalidTransition(f"{result.instance.id}: cannot record non-terminal status {result.status.value}")
        with self._lock:
            if any(r.instance.id == result.instance.id for r in self.results):
                raise InvalidTransition(f"{result.instance.id}: outcome already recorded")
            self.results.append(result)

    def results_for(self, job: str) -> List[InstanceResult]:
        with self._lock:
            return [r for r in self.results if r.instance.job == job]
