# triggers.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Sequence

from .model import Event, EventKind, TriggerRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunDecision:
    should_run: bool
    rule: Optional[TriggerRule]
    reason: str
    # True when the run was started as a reusable sub-pipeline of another run
    reusable: bool = False


def branch_matches(branch: str, patterns: Sequence[str]) -> bool:
    """
    Exact-or-glob branch filter. Empty filter matches everything.

    Patterns prefixed with "!" exclude; the last matching pattern decides,
    so ["release/*", "!release/old"] keeps every release branch but one.
    """
    if not patterns:
        return True
    matched = False
    for pat in patterns:
        negate = pat.startswith("!")
        body = pat[1:] if negate else pat
        if branch == body or fnmatchcase(branch, body):
            matched = not negate
    return matched


def decide(rules: Iterable[TriggerRule], event: Event) -> RunDecision:
    kind = EventKind.CALL if event.is_reusable_call else event.kind
    branch = event.branch

    for rule in rules:
        if rule.kind is not kind:
            continue
        if kind is EventKind.CALL:
            logger.debug("workflow_call rule matched unconditionally")
            return RunDecision(True, rule, "called as a reusable pipeline", reusable=True)
        if branch_matches(branch, rule.branches):
            reason = f"{kind.value} on {branch or '<no branch>'}"
            if rule.branches:
                reason += f" matched {list(rule.branches)}"
            return RunDecision(True, rule, reason)
        logger.debug("rule %s%s did not match branch %r", kind.value, list(rule.branches), branch)

    return RunDecision(False, None, f"no trigger matched {kind.value} on {branch or '<no branch>'}")
