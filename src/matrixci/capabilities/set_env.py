# capabilities/set_env.py
from __future__ import annotations

from ..model import Step
from .base import StepContext


def set_env(ctx: StepContext, step: Step) -> str:
    """Export every input as an environment variable for the following steps."""
    ctx.env.update(step.inputs)
    return "".join(f"{k}={v}\n" for k, v in sorted(step.inputs.items()))
