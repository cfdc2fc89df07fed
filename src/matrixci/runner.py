# runner.py
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .cache import CacheStore
from .capabilities import check_capabilities
from .config import Settings
from .dag import resolve
from .errors import ConfigurationError
from .executor import ExecutionContext
from .matrix import check_matrix, expand
from .model import Event, JobInstance, PipelineDefinition, RunRecord
from .report import aggregate
from .scheduler import schedule
from .shells import resolve_shell
from .triggers import decide
from .ui.console import get_console

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def validate(definition: PipelineDefinition) -> List[List[str]]:
    """
    Static checks that need no execution: dependency graph, matrices,
    capability references and named shells. Returns the job stages.
    """
    stages = resolve(definition.jobs)
    for template in definition.jobs:
        check_matrix(template)
        for step in template.steps:
            if step.shell is None:
                continue
            try:
                resolve_shell(step.shell)
            except ValueError as e:
                raise ConfigurationError(f"Job {template.name!r} step {step.name!r}: {e}") from e
    check_capabilities(definition.jobs)
    return stages


def plan(definition: PipelineDefinition) -> List[List[JobInstance]]:
    """Dry-run view: every stage with its expanded instances, in run order."""
    stages = validate(definition)
    by_name = definition.jobs_by_name
    return [[inst for name in stage for inst in expand(by_name[name])] for stage in stages]


def _declaration_order(definition: PipelineDefinition, stages: List[List[str]]) -> dict:
    decl = {t.name: i for i, t in enumerate(definition.jobs)}
    return {name: (s, decl[name]) for s, stage in enumerate(stages) for name in stage}


def run_pipeline(
    definition: PipelineDefinition,
    event: Event,
    settings: Optional[Settings] = None,
    *,
    source: str | Path = ".",
    run_id: Optional[str] = None,
    cache: Optional[CacheStore] = None,
) -> RunRecord:
    """
    decide -> validate -> resolve -> expand -> schedule -> aggregate.

    Configuration problems raise ConfigurationError before anything runs.
    An event no trigger accepts returns a record with no results.
    """
    console = get_console()
    settings = settings or Settings()
    run_id = run_id or new_run_id()

    decision = decide(definition.triggers, event)
    record = RunRecord(run_id=run_id, event=event, decision=decision)
    if not decision.should_run:
        logger.info("pipeline %r not triggered: %s", definition.name, decision.reason)
        console.print_not_triggered(decision.reason)
        aggregate(record)
        return record

    stages = plan(definition)
    record.order = _declaration_order(definition, resolve(definition.jobs))

    # pipeline env sits under anything the caller set explicitly
    settings = replace(settings, env={**definition.env, **settings.env})

    console.print_run_started(
        definition.name,
        f"{event.kind.value} ({decision.reason})",
        run_id,
        sum(len(s) for s in stages),
    )

    ctx = ExecutionContext(settings, source=source, run_id=run_id, commit=event.sha, cache=cache)
    schedule(stages, ctx.execute, record=record, concurrency_limit=settings.concurrency)
    aggregate(record)
    logger.debug("run %s finished: %s", run_id, record.status)
    return record
