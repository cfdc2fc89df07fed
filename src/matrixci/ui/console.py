"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from ..model import JobInstance
    from ..report import ReportRow


class Console:
    """
    Centralized console output formatting.

    Instances run in parallel worker threads, so every line carries the
    instance name and writes are serialized.
    """

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including step output and stack traces
        """
        self.debug = debug
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, event: str, run_id: str, instance_count: int) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event}",
            f"Run ID: {run_id}",
            f"Job instances: {instance_count}",
            "",
        )

    def print_not_triggered(self, reason: str) -> None:
        self._out(f"\nRUN NOT STARTED: {reason}")

    def print_plan(self, stages: Sequence[Sequence["JobInstance"]]) -> None:
        """Print the stage-by-stage execution plan."""
        self.print_header("PLAN")
        for idx, stage in enumerate(stages):
            self._out(f"Stage {idx + 1}:")
            if not stage:
                self._out("  (no instances)")
            for inst in stage:
                needs = f" needs {inst.template.needs}" if inst.template.needs else ""
                self._out(f"  {inst.name} [{inst.runs_on}]{needs}")

    def print_job_start(self, name: str) -> None:
        self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        self._out(f"[{job}] STEP: {step}")

    def print_success(self, name: str) -> None:
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
    ) -> None:
        """
        Print job failure message.

        Step output is shown in full in debug mode, otherwise only its last line.
        """
        lines = [f"[{name}] JOB FAILED: {reason.splitlines()[0] if reason else 'Unknown error'}"]
        if exit_code is not None and exit_code >= 0:
            lines.append(f"[{name}] Exit code: {exit_code}")
        if output:
            tail = output.rstrip().splitlines()
            shown = tail if self.debug else tail[-1:]
            lines.extend(f"[{name}]   {line}" for line in shown)
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_job_cancelled(self, name: str, reason: str) -> None:
        self._out(f"[{name}] STATUS: cancelled ({reason})")

    def print_cache_hit(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str) -> None:
        self._out(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_report(self, rows: Sequence["ReportRow"], status: str) -> None:
        """Print final per-instance report."""
        lines = ["", "=" * 60, "RESULTS", "=" * 60]
        width = max((len(r.name) for r in rows), default=0)
        for r in rows:
            detail = ""
            if r.failed_step:
                detail = f" at '{r.failed_step}'"
            if r.cause and r.cause != "step":
                detail += f" ({r.cause})"
            if r.allowed_failure:
                detail += " [allowed]"
            lines.append(f"  {r.name.ljust(width)}  {r.status.upper():<9} {r.duration_s:6.1f}s{detail}")
        lines.append(f"\nRUN {status.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(exc, file=sys.stderr)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
