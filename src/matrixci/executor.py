# executor.py
from __future__ import annotations

import logging
import tarfile
import time
from pathlib import Path
from typing import Dict, Optional

from .cache import CacheStore
from .capabilities import StepContext, resolve_capability
from .config import Settings
from .errors import CacheError, EnvironmentFailure, StepFailure
from .model import InstanceResult, JobInstance, JobStatus, Step, StepResult
from .ui.console import get_console
from .workspace import SETUP_STEP, acquire_workspace

logger = logging.getLogger(__name__)

RESTORE_STEP = "Restore cache"
SAVE_STEP = "Save cache"
RELEASE_STEP = "Complete job"


def runner_env(instance: JobInstance, settings: Settings, *, run_id: str, workspace: Path) -> Dict[str, str]:
    """
    Environment every step of `instance` starts from: pipeline env, then job
    env (already matrix-rendered), then the runner's own variables.
    """
    env: Dict[str, str] = {}
    env.update(settings.env)
    env.update(instance.env)
    env.update(
        {
            "CI": "true",
            "MATRIXCI": "true",
            "MATRIXCI_RUN_ID": run_id,
            "MATRIXCI_JOB": instance.job,
            "MATRIXCI_INSTANCE": instance.id,
            "MATRIXCI_OS": instance.runs_on,
            "MATRIXCI_WORKSPACE": str(workspace),
        }
    )
    return env


def _run_step(ctx: StepContext, step: Step) -> str:
    if step.run is not None:
        return ctx.run_shell(step, step.run).output
    handler = resolve_capability(step.capability or "")
    return handler(ctx, step)


class ExecutionContext:
    """
    Runs one job instance end to end:

      (a) fresh workspace   (b) cache restore   (c) steps in order
      (d) cache save on success   (e) workspace released

    A step failure stops the instance; the remaining steps are recorded as
    skipped and the cache is not saved.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        source: str | Path,
        run_id: str,
        commit: Optional[str] = None,
        cache: Optional[CacheStore] = None,
    ):
        self.settings = settings
        self.source = Path(source)
        self.run_id = run_id
        self.commit = commit
        self.cache = cache if cache is not None else CacheStore(settings.cache_dir)

    def _timeout_s(self, instance: JobInstance) -> Optional[float]:
        minutes = instance.template.timeout_minutes
        if minutes is None:
            minutes = self.settings.job_timeout_minutes
        return minutes * 60 if minutes is not None else None

    def execute(self, instance: JobInstance) -> InstanceResult:
        console = get_console()
        result = InstanceResult(instance=instance)
        result.start()
        console.print_job_start(instance.name)

        timeout_s = self._timeout_s(instance)
        deadline = time.monotonic() + timeout_s if timeout_s is not None else None
        current: Optional[int] = None  # index of the step in progress
        phase = SETUP_STEP  # reported when an unexpected error escapes
        started = time.monotonic()

        try:
            with acquire_workspace(
                instance,
                source=self.source,
                work_dir=self.settings.work_dir,
                run_id=self.run_id,
                commit=self.commit,
                mode=self.settings.checkout,
                keep=self.settings.keep_workspaces,
                exclude=[self.settings.cache_dir],
            ) as ws:
                ctx = StepContext(
                    instance=instance,
                    workspace=ws,
                    env=runner_env(instance, self.settings, run_id=self.run_id, workspace=ws.src),
                    deadline=deadline,
                    default_shell=self.settings.default_shell,
                    timeout_s=timeout_s,
                )

                # ---- restore ----
                spec = instance.template.cache
                key = manifest = None
                if spec is not None and spec.enabled:
                    phase = RESTORE_STEP
                    try:
                        hit = self.cache.restore(instance, ws.src)
                    except CacheError as e:
                        raise EnvironmentFailure(job=instance.id, step=RESTORE_STEP, message=str(e)) from e
                    key, manifest = hit.key, hit.manifest
                    result.cache = "hit" if hit.hit else "miss"
                    if hit.hit:
                        console.print_cache_hit(instance.name, hit.reason)
                    else:
                        console.print_cache_miss(instance.name)

                # ---- run steps ----
                for current, step in enumerate(instance.steps):
                    phase = step.name
                    console.print_step(instance.name, step.name)
                    started = time.monotonic()
                    output = _run_step(ctx, step)
                    result.steps.append(
                        StepResult(step.name, JobStatus.SUCCEEDED, 0, time.monotonic() - started, output[-4000:])
                    )
                current = None

                # ---- save ----
                if spec is not None and spec.enabled:
                    phase = SAVE_STEP
                    try:
                        key, _ = self.cache.save(instance, ws.src, key, manifest)
                        self.cache.prune(instance, keep=spec.keep)
                    except (OSError, ValueError, tarfile.TarError) as e:
                        raise EnvironmentFailure(job=instance.id, step=SAVE_STEP, message=str(e)) from e
                    console.print_cache_saved(instance.name, key)
                phase = RELEASE_STEP

        except StepFailure as e:
            self._record_failure(result, e.step, e.exit_code, e.output, current=current, started=started)
            result.finish(JobStatus.FAILED, cause=e.cause, failed_step=e.step, message=str(e))
            console.print_failure(instance.name, str(e), exit_code=e.exit_code, output=e.output)
        except EnvironmentFailure as e:
            self._record_failure(result, e.step, None, e.message, current=None, started=started)
            result.finish(JobStatus.FAILED, cause=e.cause, failed_step=e.step, message=str(e))
            console.print_failure(instance.name, str(e))
        except Exception as e:
            # a bug or misconfiguration surfaced mid-run; fail this instance only
            logger.exception("[%s] unexpected error", instance.id)
            self._record_failure(result, phase, None, str(e), current=current, started=started)
            result.finish(JobStatus.FAILED, cause="error", failed_step=phase, message=f"{type(e).__name__}: {e}")
            console.print_failure(instance.name, f"{type(e).__name__}: {e}")
        else:
            result.finish(JobStatus.SUCCEEDED)
            console.print_success(instance.name)

        logger.debug("[%s] %s in %.1fs", instance.id, result.status.value, result.duration_s)
        return result

    @staticmethod
    def _record_failure(
        result: InstanceResult,
        step_name: str,
        exit_code: Optional[int],
        output: str,
        *,
        current: Optional[int],
        started: float,
    ) -> None:
        """
        Append the failed step, then every step that never ran as skipped.

        `current` is the index of the failing step, or None when the failure
        came from setup (nothing ran) or cache save (everything ran).
        """
        ran = len(result.steps)
        result.steps.append(
            StepResult(step_name, JobStatus.FAILED, exit_code, time.monotonic() - started, output[-4000:])
        )
        first_unrun = current + 1 if current is not None else ran
        for step in result.instance.steps[first_unrun:]:
            result.steps.append(StepResult(step.name, JobStatus.SKIPPED))


def execute(
    instance: JobInstance,
    settings: Settings,
    *,
    source: str | Path,
    run_id: str,
    commit: Optional[str] = None,
) -> InstanceResult:
    """Functional wrapper around ExecutionContext for a single instance."""
    return ExecutionContext(settings, source=source, run_id=run_id, commit=commit).execute(instance)
