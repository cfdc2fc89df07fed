# scheduler.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence

from .model import InstanceResult, JobInstance, JobStatus, RunRecord
from .ui.console import get_console

logger = logging.getLogger(__name__)

Execute = Callable[[JobInstance], InstanceResult]


class CancelToken:
    """
    Fail-fast signal shared by the instances of one matrix group.

    Checked only when an instance is about to start; a running instance is
    never interrupted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _dispatch(instance: JobInstance, token: CancelToken, execute: Execute) -> InstanceResult:
    if token.cancelled:
        result = InstanceResult(instance=instance)
        result.cancel(f"fail-fast after {token.reason} failed")
        get_console().print_job_cancelled(instance.name, result.message or "")
        return result

    result = execute(instance)
    if result.status is JobStatus.FAILED and instance.fail_fast and not instance.continue_on_error:
        # set from the worker, before the slot frees, so queued siblings see it
        token.cancel(instance.name)
    return result


def _job_succeeded(record: RunRecord, job: str) -> bool:
    """A job unblocks its dependents only if none of its instances fell short."""
    for r in record.results_for(job):
        if r.status is JobStatus.SUCCEEDED or r.allowed_failure:
            continue
        return False
    return True


def schedule(
    stages: Sequence[Sequence[JobInstance]],
    execute: Execute,
    *,
    record: RunRecord,
    concurrency_limit: Optional[int] = None,
) -> RunRecord:
    """
    Run stages in order; instances inside a stage run in parallel.

    - Instances whose `needs` did not fully succeed are skipped, not started.
    - Fail-fast is scoped to one matrix group (one template): a failure
      cancels siblings that have not started yet, nothing else.
    - `concurrency_limit` bounds workers per stage (None = one per instance).
    """
    console = get_console()

    for stage_idx, stage in enumerate(stages):
        runnable: List[JobInstance] = []
        for inst in stage:
            blocked = [n for n in inst.template.needs if not _job_succeeded(record, n)]
            if blocked:
                result = InstanceResult(instance=inst)
                result.skip("needs", f"required job(s) did not succeed: {blocked}")
                console.print_job_skipped(inst.name, result.message or "")
                record.append(result)
            else:
                runnable.append(inst)

        if not runnable:
            continue

        tokens: Dict[str, CancelToken] = {}
        for inst in runnable:
            tokens.setdefault(inst.job, CancelToken())

        workers = concurrency_limit or len(runnable)
        logger.debug("stage %d: %d instance(s), %d worker(s)", stage_idx + 1, len(runnable), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="matrixci") as pool:
            futures = {pool.submit(_dispatch, inst, tokens[inst.job], execute): inst for inst in runnable}
            for future in as_completed(futures):
                record.append(future.result())

    return record
