# matrix.py
from __future__ import annotations

import itertools
import logging
import re
from dataclasses import replace
from typing import Dict, List

from .errors import ConfigurationError
from .model import JobInstance, JobTemplate, MatrixSpec, Step

logger = logging.getLogger(__name__)

_EXPR = re.compile(r"\$\{\{\s*([^}]*?)\s*\}\}")


def render(text: str, binding: Dict[str, str], *, where: str) -> str:
    """Substitute ${{ matrix.<axis> }} references with the bound values."""

    def replacer(m: re.Match) -> str:
        expr = m.group(1)
        if not expr.startswith("matrix."):
            # not ours (e.g. a shell-level template); leave as written
            return m.group(0)
        axis = expr[len("matrix."):]
        if axis not in binding:
            raise ConfigurationError(f"{where}: unknown matrix axis {axis!r} (known: {sorted(binding)})")
        return binding[axis]

    return _EXPR.sub(replacer, text)


def _render_map(values: Dict[str, str], binding: Dict[str, str], *, where: str) -> Dict[str, str]:
    return {k: render(v, binding, where=f"{where}.{k}") for k, v in values.items()}


def _render_step(step: Step, binding: Dict[str, str], job: str) -> Step:
    where = f"job {job!r} step {step.name!r}"
    return replace(
        step,
        name=render(step.name, binding, where=where),
        run=render(step.run, binding, where=where) if step.run is not None else None,
        inputs=_render_map(step.inputs, binding, where=where),
        env=_render_map(step.env, binding, where=where),
    )


def check_matrix(template: JobTemplate) -> None:
    m = template.matrix
    if m is None:
        return
    if not isinstance(m, MatrixSpec) or not isinstance(m.axes, dict):
        raise ConfigurationError(f"Job {template.name!r}: matrix must map axis names to value lists")
    for axis, values in m.axes.items():
        if not axis or not isinstance(axis, str):
            raise ConfigurationError(f"Job {template.name!r}: matrix axis names must be non-empty strings")
        if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
            raise ConfigurationError(f"Job {template.name!r}: matrix axis {axis!r} must be a list of values")
        for v in values:
            if not isinstance(v, (str, int, float, bool)):
                raise ConfigurationError(
                    f"Job {template.name!r}: matrix axis {axis!r} has unsupported value {v!r}"
                )
    for axis in m.continue_on_error:
        if axis not in m.axes:
            raise ConfigurationError(f"Job {template.name!r}: continue_on_error names unknown axis {axis!r}")


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Turn one template into its concrete instances.

    No matrix -> exactly one instance. Otherwise the cross product of the axis
    values, first declared axis outermost, so ordering is reproducible.
    """
    check_matrix(template)

    if template.matrix is None:
        bindings: List[Dict[str, str]] = [{}]
    else:
        axes = template.matrix.axes
        if any(len(v) == 0 for v in axes.values()):
            logger.info("job %r has an empty matrix axis; no instances", template.name)
            return []
        names = list(axes)
        bindings = [
            dict(zip(names, (str(v) for v in combo)))
            for combo in itertools.product(*(axes[n] for n in names))
        ]

    instances: List[JobInstance] = []
    for index, binding in enumerate(bindings):
        where = f"job {template.name!r}"
        if template.display_name:
            name = render(template.display_name, binding, where=where)
        elif binding:
            name = f"{template.name} ({', '.join(binding.values())})"
        else:
            name = template.name

        instances.append(
            JobInstance(
                template=template,
                index=index,
                binding=binding,
                name=name,
                runs_on=render(template.runs_on, binding, where=f"{where}.runs_on"),
                steps=tuple(_render_step(s, binding, template.name) for s in template.steps),
                env=_render_map(template.env, binding, where=f"{where}.env"),
            )
        )
    return instances
