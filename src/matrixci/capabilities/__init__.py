# capabilities/__init__.py
"""
Reusable step capabilities, referenced from a step as `uses: <name>[@version]`.

Resolution is a fixed table lookup; an owner prefix ("actions/checkout")
and a version suffix ("@v2") are ignored.
"""
from __future__ import annotations

from typing import Dict, Iterable, List

from ..errors import ConfigurationError
from ..model import JobTemplate
from .base import Capability, StepContext
from .checkout import checkout
from .set_env import set_env
from .toolchain import toolchain

CAPABILITIES: Dict[str, Capability] = {
    "checkout": checkout,
    "toolchain": toolchain,
    "set-env": set_env,
}


def resolve_capability(name: str) -> Capability:
    try:
        return CAPABILITIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown capability {name!r}. Known: {sorted(CAPABILITIES)}"
        ) from None


def check_capabilities(jobs: Iterable[JobTemplate]) -> List[str]:
    """Raise ConfigurationError for the first unknown `uses:` reference."""
    seen: List[str] = []
    for job in jobs:
        for step in job.steps:
            if step.capability is None:
                continue
            if step.capability not in CAPABILITIES:
                raise ConfigurationError(
                    f"Job {job.name!r} step {step.name!r}: unknown capability {step.uses!r}. "
                    f"Known: {sorted(CAPABILITIES)}"
                )
            seen.append(step.capability)
    return seen


__all__ = ["CAPABILITIES", "Capability", "StepContext", "check_capabilities", "resolve_capability"]
