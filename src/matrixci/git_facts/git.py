# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def is_repo(path: str | Path) -> bool:
    """True if `path` is inside a git work tree (and git is available)."""
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Used as the default commit for workspace checkouts."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    Returns "HEAD" when detached, which never matches a branch filter
    other than a catch-all.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def clone_at(source: str | Path, dest: str | Path, sha: str) -> None:
    """
    Fresh checkout of `source` at commit `sha` into `dest`.

    Uses --shared so the object store is borrowed from the source repo
    instead of copied; the work tree itself is private to `dest`.
    """
    _git(["clone", "--quiet", "--no-checkout", "--shared", str(source), str(dest)])
    _git(["checkout", "--quiet", "--detach", sha], cwd=dest)
