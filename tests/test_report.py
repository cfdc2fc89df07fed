"""Tests for run aggregation and the per-instance report."""

from __future__ import annotations

import pytest

from matrixci.errors import InvalidTransition
from matrixci.matrix import expand
from matrixci.model import Event, EventKind, InstanceResult, JobStatus, RunRecord
from matrixci.report import EXIT_FAILED, EXIT_OK, aggregate, build_report
from matrixci.triggers import RunDecision

from conftest import make_job


def _record(should_run: bool = True) -> RunRecord:
    return RunRecord(
        run_id="r",
        event=Event(EventKind.PUSH, "main"),
        decision=RunDecision(should_run, None, "test"),
    )


def _finished(inst, status: JobStatus) -> InstanceResult:
    r = InstanceResult(instance=inst)
    if status is JobStatus.SKIPPED:
        r.skip("needs", "blocked")
    elif status is JobStatus.CANCELLED:
        r.cancel("fail-fast")
    else:
        r.start()
        r.finish(status)
    return r


class TestAggregate:
    def test_all_succeeded(self):
        record = _record()
        for inst in expand(make_job("t", matrix={"os": ["a", "b"]})):
            record.append(_finished(inst, JobStatus.SUCCEEDED))
        assert aggregate(record) == EXIT_OK
        assert record.status == "succeeded"

    def test_one_failure_fails_the_run(self):
        record = _record()
        a, b, c = expand(make_job("t", matrix={"os": ["A", "B", "C"]}))
        record.append(_finished(a, JobStatus.SUCCEEDED))
        record.append(_finished(b, JobStatus.FAILED))
        record.append(_finished(c, JobStatus.SUCCEEDED))
        assert aggregate(record) == EXIT_FAILED
        assert record.status == "failed"

    def test_allowed_failure_does_not_fail_the_run(self):
        record = _record()
        stable, nightly = expand(
            make_job("t", matrix={"tc": ["stable", "nightly"]}, continue_on_error={"tc": ["nightly"]})
        )
        record.append(_finished(stable, JobStatus.SUCCEEDED))
        record.append(_finished(nightly, JobStatus.FAILED))
        assert aggregate(record) == EXIT_OK

    def test_skipped_and_cancelled_alone_do_not_fail(self):
        record = _record()
        a, b = expand(make_job("t", matrix={"os": ["a", "b"]}))
        record.append(_finished(a, JobStatus.SKIPPED))
        record.append(_finished(b, JobStatus.CANCELLED))
        assert aggregate(record) == EXIT_OK

    def test_not_triggered(self):
        record = _record(should_run=False)
        assert aggregate(record) == EXIT_OK
        assert record.status == "not-triggered"


class TestRunRecord:
    def test_rejects_non_terminal(self):
        (inst,) = expand(make_job("t"))
        r = InstanceResult(instance=inst)
        r.start()
        with pytest.raises(InvalidTransition):
            _record().append(r)

    def test_rejects_duplicate(self):
        (inst,) = expand(make_job("t"))
        record = _record()
        record.append(_finished(inst, JobStatus.SUCCEEDED))
        with pytest.raises(InvalidTransition, match="already recorded"):
            record.append(_finished(inst, JobStatus.SUCCEEDED))

    def test_status_never_moves_backwards(self):
        (inst,) = expand(make_job("t"))
        r = _finished(inst, JobStatus.SUCCEEDED)
        with pytest.raises(InvalidTransition):
            r.start()


class TestBuildReport:
    def test_rows_ordered_by_stage_declaration_then_matrix(self):
        record = _record()
        build = make_job("build")
        test = make_job("test", needs=["build"], matrix={"os": ["a", "b"]})
        lint = make_job("lint")
        record.order = {"build": (0, 0), "lint": (0, 2), "test": (1, 1)}
        t_a, t_b = expand(test)
        for inst, status in [
            (t_b, JobStatus.SUCCEEDED),
            (expand(lint)[0], JobStatus.SUCCEEDED),
            (t_a, JobStatus.FAILED),
            (expand(build)[0], JobStatus.SUCCEEDED),
        ]:
            record.append(_finished(inst, status))

        rows = build_report(record)
        assert [r.name for r in rows] == ["build", "lint", "test (a)", "test (b)"]
        assert rows[2].status == "failed"
        assert rows[2].binding == {"os": "a"}
