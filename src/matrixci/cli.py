# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from ._log import setup_logging
from .config import CHECKOUT_MODES, Settings
from .errors import ConfigurationError
from .git_facts.git import current_branch, head_sha, is_repo
from .loader import load_workflow
from .model import Event, EventKind
from .report import build_report
from .runner import plan as plan_stages
from .runner import run_pipeline
from .ui.console import Console, get_console, set_console

logger = logging.getLogger(__name__)

EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOWS = ("matrixci.yml", "matrixci.yaml", "matrixci_workflow.py")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    workflow_files = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow matrixci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create a matrixci.yml, or specify a workflow explicitly:\n  matrixci run --workflow path/to/pipeline.yml",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci.yml",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _load(workflow: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", f"Could not load workflow from {workflow_path}", details=[str(e)])
        sys.exit(EXIT_CONFIG)


def build_event(kind: str, branch: str | None, sha: str | None, source: Path) -> Event:
    """Event for a local run; branch and sha default to the checked-out HEAD."""
    console = get_console()
    event_kind = EventKind.parse(kind)
    if is_repo(source):
        try:
            if branch is None:
                branch = current_branch(source)
                console.print_debug(f"Using git branch: {branch}")
            if sha is None:
                sha = head_sha(source)
                console.print_debug(f"Using git commit: {sha}")
        except subprocess.CalledProcessError as e:
            # e.g. a repository without commits yet
            logger.debug("git facts unavailable: %s", e)
    return Event(
        kind=event_kind,
        branch_ref=branch or "",
        sha=sha,
        is_reusable_call=event_kind is EventKind.CALL,
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, step output and debug logs)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: run matrix CI pipelines locally, one fresh workspace per job."""
    setup_logging(verbose=debug)
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to matrixci.yml if present)")
@click.option(
    "--event",
    "event_kind",
    default="workflow_dispatch",
    show_default=True,
    help="Event to simulate: push, pull_request, workflow_dispatch or workflow_call",
)
@click.option("--branch", default=None, help="Branch the event applies to (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit to check out (defaults to HEAD)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max parallel instances per stage")
@click.option("--cache-dir", default=None, type=click.Path(path_type=Path), help="Cache directory")
@click.option("--work-dir", default=None, type=click.Path(path_type=Path), help="Directory for job workspaces")
@click.option("--checkout", default=None, type=click.Choice(CHECKOUT_MODES), help="How workspaces are populated")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Leave workspaces on disk after the run")
@click.option("--shell", default=None, help="Default shell for steps that do not pick one")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Per-job timeout in minutes")
@click.pass_context
def run(ctx, workflow, event_kind, branch, sha, workers, cache_dir, work_dir, checkout, keep_workspaces, shell, timeout):
    """Run a matrixci pipeline."""
    console = get_console()
    workflow_path, definition = _load(workflow)

    try:
        settings = Settings.from_env()
        overrides = {
            "concurrency": workers,
            "cache_dir": cache_dir,
            "work_dir": work_dir,
            "checkout": checkout,
            "default_shell": shell,
            "job_timeout_minutes": timeout,
        }
        settings = replace(
            settings,
            keep_workspaces=keep_workspaces or settings.keep_workspaces,
            **{k: v for k, v in overrides.items() if v is not None},
        )

        source = Path(".").resolve()
        event = build_event(event_kind, branch, sha, source)
        record = run_pipeline(definition, event, settings, source=source)
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    except ValueError as e:
        # Settings validation (e.g. a bad MATRIXCI_* value)
        console.print_error("Invalid settings", str(e))
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if record.decision.should_run:
        console.print_report(build_report(record), record.status or "unknown")
    if record.status == "failed":
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to matrixci.yml if present)")
def plan(workflow):
    """Show the stages and expanded job instances without running anything."""
    console = get_console()
    workflow_path, definition = _load(workflow)
    try:
        stages = plan_stages(definition)
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    console.print_info(f"Pipeline: {definition.name} ({workflow_path})")
    console.print_info(
        "Triggers: " + ", ".join(
            t.kind.value + (f" {list(t.branches)}" if t.branches else "") for t in definition.triggers
        )
    )
    console.print_plan(stages)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to matrixci.yml if present)")
def validate(workflow):
    """Check a workflow for configuration errors."""
    console = get_console()
    workflow_path, definition = _load(workflow)
    try:
        stages = plan_stages(definition)
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)
    count = sum(len(s) for s in stages)
    console.print_info(f"{workflow_path}: OK ({len(definition.jobs)} job(s), {count} instance(s), {len(stages)} stage(s))")


if __name__ == "__main__":
    cli()
