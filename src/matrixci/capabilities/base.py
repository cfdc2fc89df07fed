# capabilities/base.py
from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional

from ..errors import StepFailure, StepTimeout
from ..model import JobInstance, Step
from ..shells import ShellResult, run_script
from ..workspace import Workspace


@dataclass
class StepContext:
    """
    Per-instance state shared by the steps of one job instance.

    `env` starts as pipeline env + job env + runner variables; capability
    steps may add to it for the steps that follow. Nothing here is shared
    between instances.
    """
    instance: JobInstance
    workspace: Workspace
    env: Dict[str, str] = field(default_factory=dict)
    deadline: Optional[float] = None
    default_shell: Optional[str] = None
    timeout_s: Optional[float] = None
    _counter: int = 0

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def run_shell(self, step: Step, body: str, *, shell: Optional[str] = None) -> ShellResult:
        """
        Run `body` for `step` in the workspace. Raises StepFailure on a
        non-zero exit and StepTimeout when the instance deadline passes.
        """
        self._counter += 1
        cwd = self.workspace.src / (step.cwd or ".")
        if not cwd.is_dir():
            raise StepFailure(
                job=self.instance.id, step=step.name, cmd=body, exit_code=-1,
                output=f"working directory not found: {cwd}",
            )

        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise StepTimeout(job=self.instance.id, step=step.name, cmd=body, exit_code=-1,
                              timeout_s=self.timeout_s or 0.0)
        try:
            res = run_script(
                body,
                shell=shell or step.shell or self.default_shell,
                cwd=cwd,
                env={**self.env, **step.env},
                script_dir=self.workspace.tmp,
                stem=f"step-{self._counter}",
                timeout=remaining,
            )
        except subprocess.TimeoutExpired as e:
            out = e.output or ""
            if isinstance(out, bytes):
                out = out.decode("utf-8", "replace")
            raise StepTimeout(job=self.instance.id, step=step.name, cmd=body, exit_code=-1,
                              output=out[-4000:], timeout_s=self.timeout_s or 0.0) from e
        except FileNotFoundError as e:
            raise StepFailure(job=self.instance.id, step=step.name, cmd=body, exit_code=127,
                              output=f"shell not found: {e.filename or e}") from e

        if res.exit_code != 0:
            raise StepFailure(job=self.instance.id, step=step.name, cmd=body,
                              exit_code=res.exit_code, output=res.output[-4000:])
        return res


# handler(ctx, step) -> captured output; raises StepFailure on failure
Capability = Callable[[StepContext, Step], str]


def required_input(ctx: StepContext, step: Step, key: str) -> str:
    value = step.inputs.get(key, "").strip()
    if not value:
        raise StepFailure(job=ctx.instance.id, step=step.name, cmd=step.uses or "", exit_code=2,
                          output=f"missing required input {key!r}")
    return value


def workspace_path(ctx: StepContext, rel: str) -> Path:
    return (ctx.workspace.src / rel).resolve()
