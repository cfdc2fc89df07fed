from .loader import load_workflow
from .model import Event, EventKind, JobTemplate, PipelineDefinition, Step
from .runner import plan, run_pipeline, validate
from .dsl import (
    JobBuilder,
    build,
    job,
    matrix,
    on_call,
    on_dispatch,
    on_pull_request,
    on_push,
    pipeline,
    sh,
    uses,
)

__all__ = [
    "Event",
    "EventKind",
    "JobBuilder",
    "JobTemplate",
    "PipelineDefinition",
    "Step",
    "build",
    "job",
    "load_workflow",
    "matrix",
    "on_call",
    "on_dispatch",
    "on_pull_request",
    "on_push",
    "pipeline",
    "plan",
    "run_pipeline",
    "sh",
    "uses",
    "validate",
]
