# report.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from .model import JobStatus, RunRecord

EXIT_OK = 0
EXIT_FAILED = 1


@dataclass(frozen=True)
class ReportRow:
    name: str
    job: str
    binding: Dict[str, str]
    status: str
    cause: Optional[str]
    failed_step: Optional[str]
    duration_s: float
    allowed_failure: bool = False


def aggregate(record: RunRecord) -> int:
    """
    Finalize the run status and return the process exit status.

    The run fails if any instance failed, unless that instance's matrix
    binding is marked continue-on-error. Skipped and cancelled instances
    never fail the run by themselves.
    """
    failed = any(r.status is JobStatus.FAILED and not r.allowed_failure for r in record.results)
    if not record.decision.should_run:
        record.status = "not-triggered"
    else:
        record.status = "failed" if failed else "succeeded"
    return EXIT_FAILED if failed else EXIT_OK


def build_report(record: RunRecord) -> List[ReportRow]:
    """Per-instance rows, ordered by stage, then declaration order, then matrix order."""

    def sort_key(r):
        stage, decl = record.order.get(r.instance.job, (0, 0))
        return stage, decl, r.instance.index

    return [
        ReportRow(
            name=r.instance.name,
            job=r.instance.job,
            binding=dict(r.instance.binding),
            status=r.status.value,
            cause=r.cause,
            failed_step=r.failed_step,
            duration_s=r.duration_s,
            allowed_failure=r.allowed_failure,
        )
        for r in sorted(record.results, key=sort_key)
    ]
