# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import ConfigurationError
from .model import (
    CacheSpec,
    EventKind,
    JobTemplate,
    MatrixSpec,
    PipelineDefinition,
    Step,
    TriggerRule,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    shell: str | None = None,
    env: Optional[Dict[str, str]] = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, shell=shell, env=dict(env or {}))


def uses(ref: str, name: str | None = None, **inputs: Any) -> Step:
    """Create a capability step, e.g. uses("toolchain@v1", toolchain="nightly")."""
    return Step(
        name=name or ref,
        uses=ref,
        inputs={k: str(v) for k, v in inputs.items()},
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    fail_fast: bool = True,
    continue_on_error: Optional[Dict[str, Iterable[Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Declare matrix axes; instances are the cross product in declared order.

    Example:
        matrix(os=["ubuntu-latest", "windows-latest"], fail_fast=False)
    """
    return MatrixSpec(
        axes={k: tuple(str(v) for v in vals) for k, vals in axes.items()},
        fail_fast=fail_fast,
        continue_on_error={k: tuple(str(v) for v in vals) for k, vals in (continue_on_error or {}).items()},
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    display_name: str | None = None,
    runs_on: str = "host",
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    matrix: Optional[MatrixSpec] = None,
    cache_paths: Optional[Sequence[str]] = None,
    lock_files: Sequence[str] = ("Cargo.lock",),
    cache_keep: int = 3,
    toolchain: str | None = None,
    timeout_minutes: float | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ConfigurationError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    cache = None
    if cache_paths is not None:
        cache = CacheSpec(paths=tuple(cache_paths), lock_files=tuple(lock_files), keep=cache_keep)

    return JobTemplate(
        name=name,
        steps=steps_final,
        display_name=display_name,
        runs_on=runs_on,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        matrix=matrix,
        cache=cache,
        toolchain=toolchain,
        timeout_minutes=timeout_minutes,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._display_name: str | None = None
        self._runs_on = "host"
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: MatrixSpec | None = None
        self._cache: CacheSpec | None = None
        self._toolchain: str | None = None
        self._timeout: float | None = None

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def runs_on(self, target: str):
        self._runs_on = target
        return self

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, shell: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, shell=shell))
        return self

    def use(self, ref: str, name: str | None = None, **inputs: Any):
        self._steps.append(uses(ref, name, **inputs))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, *, fail_fast: bool = True, **axes: Iterable[Any]):
        self._matrix = matrix(fail_fast=fail_fast, **axes)
        return self

    def cache_dirs(self, *dirs: str, lock_files: Sequence[str] = ("Cargo.lock",), keep: int = 3):
        self._cache = CacheSpec(paths=tuple(dirs), lock_files=tuple(lock_files), keep=keep)
        return self

    def with_toolchain(self, name: str):
        self._toolchain = name
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ConfigurationError(f"Job '{self.name}' has no steps")
        return JobTemplate(
            name=self.name,
            steps=list(self._steps),
            display_name=self._display_name,
            runs_on=self._runs_on,
            needs=list(self._needs),
            env=dict(self._env),
            matrix=self._matrix,
            cache=self._cache,
            toolchain=self._toolchain,
            timeout_minutes=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return TriggerRule(EventKind.PUSH, tuple(branches))


def on_pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(EventKind.PULL_REQUEST, tuple(branches))


def on_dispatch() -> TriggerRule:
    return TriggerRule(EventKind.DISPATCH)


def on_call() -> TriggerRule:
    return TriggerRule(EventKind.CALL)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: JobTemplate,
    name: str = "pipeline",
    on: Optional[Sequence[TriggerRule]] = None,
    env: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """
    Users can write:
        from matrixci import pipeline, job, sh, on_push

        def workflow():
            return pipeline(
                job("fmt", sh("check", "cargo fmt -- --check")),
                on=[on_push("main")],
            )

    Without `on`, the pipeline only runs on manual dispatch.
    """
    return PipelineDefinition(
        name=name,
        jobs=list(jobs),
        triggers=list(on) if on is not None else [on_dispatch()],
        env={k: str(v) for k, v in (env or {}).items()},
    )
