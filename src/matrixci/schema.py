"""Pydantic models for pipeline YAML definitions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .model import (
    CacheSpec,
    EventKind,
    JobTemplate,
    MatrixSpec,
    PipelineDefinition,
    Step,
    TriggerRule,
)

Scalar = str | int | float | bool


def _as_str(v: Scalar) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TriggerModel(_Model):
    event: str
    branches: list[str] = []

    @field_validator("event")
    @classmethod
    def _known_event(cls, v: str) -> str:
        return EventKind.parse(v).value

    @field_validator("branches", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class StepModel(_Model):
    name: str | None = None
    run: str | None = None
    uses: str | None = None
    with_: dict[str, Scalar] = Field(default_factory=dict, alias="with")
    shell: str | None = None
    env: dict[str, Scalar] = {}
    cwd: str | None = None

    @model_validator(mode="after")
    def _run_or_uses(self) -> StepModel:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class MatrixModel(_Model):
    axes: dict[str, list[Scalar]] = Field(min_length=1)
    fail_fast: bool = True
    continue_on_error: dict[str, list[Scalar]] = {}

    @model_validator(mode="after")
    def _known_axes(self) -> MatrixModel:
        for axis in self.continue_on_error:
            if axis not in self.axes:
                raise ValueError(f"continue_on_error names unknown axis {axis!r}")
        return self


class CacheModel(_Model):
    paths: list[str] = ["target"]
    lock_files: list[str] = ["Cargo.lock"]
    enabled: bool = True
    keep: int = Field(default=3, ge=1)

    @field_validator("paths")
    @classmethod
    def _relative(cls, v: list[str]) -> list[str]:
        for p in v:
            if p.startswith(("/", "~", "\\")) or ".." in p.replace("\\", "/").split("/"):
                raise ValueError(f"cache path {p!r} must be relative to the workspace")
        return v


class JobModel(_Model):
    name: str | None = None
    runs_on: str = "host"
    needs: list[str] = []
    env: dict[str, Scalar] = {}
    matrix: MatrixModel | None = None
    cache: CacheModel | None = None
    toolchain: str | None = None
    timeout_minutes: float | None = Field(default=None, gt=0)
    steps: list[StepModel] = Field(min_length=1)

    @field_validator("needs", mode="before")
    @classmethod
    def _one_or_many(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class PipelineModel(_Model):
    name: str = "pipeline"
    triggers: list[TriggerModel] = [TriggerModel(event="workflow_dispatch")]
    env: dict[str, Scalar] = {}
    jobs: dict[str, JobModel] = Field(min_length=1)

    def to_definition(self) -> PipelineDefinition:
        return PipelineDefinition(
            name=self.name,
            jobs=[_job(name, j) for name, j in self.jobs.items()],
            triggers=[TriggerRule(EventKind.parse(t.event), tuple(t.branches)) for t in self.triggers],
            env={k: _as_str(v) for k, v in self.env.items()},
        )


def _step(index: int, s: StepModel) -> Step:
    name = s.name or s.run or s.uses or f"step {index + 1}"
    return Step(
        name=name.strip().splitlines()[0] if name.strip() else f"step {index + 1}",
        run=s.run,
        uses=s.uses,
        inputs={k: _as_str(v) for k, v in s.with_.items()},
        shell=s.shell,
        env={k: _as_str(v) for k, v in s.env.items()},
        cwd=s.cwd,
    )


def _job(name: str, j: JobModel) -> JobTemplate:
    matrix = None
    if j.matrix is not None:
        matrix = MatrixSpec(
            axes={a: tuple(_as_str(v) for v in vals) for a, vals in j.matrix.axes.items()},
            fail_fast=j.matrix.fail_fast,
            continue_on_error={a: tuple(_as_str(v) for v in vals) for a, vals in j.matrix.continue_on_error.items()},
        )
    cache = None
    if j.cache is not None:
        cache = CacheSpec(
            paths=tuple(j.cache.paths),
            lock_files=tuple(j.cache.lock_files),
            enabled=j.cache.enabled,
            keep=j.cache.keep,
        )
    return JobTemplate(
        name=name,
        steps=[_step(i, s) for i, s in enumerate(j.steps)],
        display_name=j.name,
        runs_on=j.runs_on,
        needs=list(j.needs),
        env={k: _as_str(v) for k, v in j.env.items()},
        matrix=matrix,
        cache=cache,
        toolchain=j.toolchain,
        timeout_minutes=j.timeout_minutes,
    )
