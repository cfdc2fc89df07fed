"""Shared test fixtures and helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from matrixci.config import Settings
from matrixci.model import CacheSpec, JobTemplate, MatrixSpec, Step
from matrixci.ui.console import Console, set_console


def make_job(
    name: str = "build",
    *runs: str,
    needs: list[str] | None = None,
    matrix: dict[str, list[str]] | None = None,
    fail_fast: bool = True,
    continue_on_error: dict[str, list[str]] | None = None,
    cache: CacheSpec | None = None,
    **kwargs,
) -> JobTemplate:
    """Build a JobTemplate whose steps are the given shell commands."""
    steps = [Step(name=f"step {i + 1}", run=cmd) for i, cmd in enumerate(runs or ["true"])]
    spec = None
    if matrix is not None:
        spec = MatrixSpec(
            axes={k: tuple(v) for k, v in matrix.items()},
            fail_fast=fail_fast,
            continue_on_error={k: tuple(v) for k, v in (continue_on_error or {}).items()},
        )
    return JobTemplate(name=name, steps=steps, needs=list(needs or []), matrix=spec, cache=cache, **kwargs)


@pytest.fixture(autouse=True)
def _fresh_console():
    set_console(Console())
    yield


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A small source tree to check out into job workspaces."""
    src = tmp_path / "project"
    src.mkdir()
    (src / "README.md").write_text("hello\n")
    (src / "Cargo.lock").write_text("# lock v1\n")
    (src / "pkg").mkdir()
    (src / "pkg" / "main.txt").write_text("main\n")
    return src


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        checkout="copy",
        default_shell="bash",
    )
