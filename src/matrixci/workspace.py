# workspace.py
from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import stat
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .config import DEFAULT_STATE_DIR
from .errors import EnvironmentFailure
from .git_facts.git import clone_at, is_repo
from .model import JobInstance

logger = logging.getLogger(__name__)

SETUP_STEP = "Set up job"

# never copied into a workspace
_COPY_IGNORES = {".git", DEFAULT_STATE_DIR, "__pycache__"}


@dataclass(frozen=True)
class Workspace:
    """
    Private directories for one job instance.

      root/
        src/   checkout of the source tree (steps run here)
        tmp/   step scripts and other scratch files
    """
    root: Path
    src: Path
    tmp: Path


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", text).strip("-") or "job"


def workspace_name(instance: JobInstance) -> str:
    """
    Directory name of an instance's workspace. Index and digest keep
    instances apart whose ids slug to the same text (`os=a b`, `os=a/b`).
    """
    digest = hashlib.sha256(instance.id.encode("utf-8")).hexdigest()[:8]
    return f"{instance.index}-{_slug(instance.id)[:48]}-{digest}"


def _force_remove(func, path, exc) -> None:
    # read-only files (e.g. git objects on Windows) block rmtree
    os.chmod(path, stat.S_IWRITE)
    func(path)


def _copy_tree(source: Path, dest: Path, skip: List[Path]) -> None:
    skip_resolved = {p.resolve() for p in skip}

    def ignore(dirname: str, names: List[str]) -> List[str]:
        out = []
        for n in names:
            if n in _COPY_IGNORES or (Path(dirname) / n).resolve() in skip_resolved:
                out.append(n)
        return out

    shutil.copytree(source, dest, ignore=ignore, symlinks=True)


def _checkout(source: Path, dest: Path, *, mode: str, commit: Optional[str], skip: List[Path]) -> str:
    use_git = mode == "git" or (mode == "auto" and commit is not None and is_repo(source))
    if use_git:
        if commit is None:
            raise ValueError("git checkout requires a commit sha")
        clone_at(source, dest, commit)
        return f"git checkout {commit[:12]}"
    _copy_tree(source, dest, skip)
    return f"copy of {source}"


@contextmanager
def acquire_workspace(
    instance: JobInstance,
    *,
    source: str | Path,
    work_dir: str | Path,
    run_id: str,
    commit: Optional[str] = None,
    mode: str = "auto",
    keep: bool = False,
    exclude: Sequence[str | Path] = (),
) -> Iterator[Workspace]:
    """
    Check out a fresh copy of `source` for one instance, and always discard it.

    Raises EnvironmentFailure (on the implicit setup step) if the checkout
    cannot be produced.
    """
    source_p = Path(source).resolve()
    work_p = Path(work_dir).resolve()
    root = work_p / run_id / workspace_name(instance)
    ws = Workspace(root=root, src=root / "src", tmp=root / "tmp")

    try:
        if root.exists():
            shutil.rmtree(root, onexc=_force_remove)
        ws.tmp.mkdir(parents=True)
        skip = [work_p, *(Path(p) for p in exclude)]
        how = _checkout(source_p, ws.src, mode=mode, commit=commit, skip=skip)
    except subprocess.CalledProcessError as e:
        shutil.rmtree(root, onexc=_force_remove)
        detail = (e.stderr or "").strip() or str(e)
        raise EnvironmentFailure(job=instance.id, step=SETUP_STEP, message=f"checkout failed: {detail}") from e
    except (OSError, ValueError) as e:
        if root.exists():
            shutil.rmtree(root, onexc=_force_remove)
        raise EnvironmentFailure(job=instance.id, step=SETUP_STEP, message=f"checkout failed: {e}") from e

    logger.debug("[%s] workspace ready (%s) at %s", instance.id, how, ws.src)
    try:
        yield ws
    finally:
        if keep:
            logger.info("[%s] keeping workspace %s", instance.id, root)
        else:
            shutil.rmtree(root, onexc=_force_remove)
