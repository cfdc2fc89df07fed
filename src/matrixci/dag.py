# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Sequence, Set, Tuple

from .errors import ConfigurationError
from .model import JobTemplate


def build_dag(jobs: Sequence[JobTemplate]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from job templates.

    Edge A -> B means B needs A to succeed first.
    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs or []:
            if dep not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if dep == job.name:
                raise ConfigurationError(f"Job '{job.name}' needs itself")
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Sequence[str] | None = None,
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel; names inside a stage follow `order`
    (declaration order) when given, otherwise sorted.
    """
    position = {n: i for i, n in enumerate(order or sorted(indeg))}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=position.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = sorted(q, key=position.__getitem__)
        q.clear()
        levels.append(level)
        processed += len(level)

        for node in level:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ConfigurationError(f"Dependency cycle between jobs. Stuck jobs: {remaining}")

    return levels


def resolve(jobs: Sequence[JobTemplate]) -> List[List[str]]:
    """Order job templates into stages; raises ConfigurationError on cycles."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg, order=[j.name for j in jobs])
