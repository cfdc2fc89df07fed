# capabilities/checkout.py
from __future__ import annotations

from ..errors import StepFailure
from ..model import Step
from .base import StepContext, workspace_path


def checkout(ctx: StepContext, step: Step) -> str:
    """
    The workspace is already a fresh checkout when steps start, so this only
    confirms it (and any `path` input) is present.
    """
    src = ctx.workspace.src
    target = workspace_path(ctx, step.inputs.get("path", "."))
    if not src.is_dir() or not target.exists():
        raise StepFailure(job=ctx.instance.id, step=step.name, cmd=step.uses or "checkout",
                          exit_code=1, output=f"not found in workspace: {target}")
    return f"workspace ready at {src}"
