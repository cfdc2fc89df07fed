# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

DEFAULT_STATE_DIR = ".matrixci"
DEFAULT_CACHE_DIR = f"{DEFAULT_STATE_DIR}/cache"
DEFAULT_WORK_DIR = f"{DEFAULT_STATE_DIR}/work"
CHECKOUT_MODES = ("auto", "git", "copy")


@dataclass
class Settings:
    """
    Run-wide settings, threaded explicitly from the CLI down to each step.

    `env` holds the pipeline-level variables (e.g. a color-output toggle)
    that every step inherits unless the job or step overrides them.
    """
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    work_dir: Path = Path(DEFAULT_WORK_DIR)
    concurrency: Optional[int] = None          # None = one worker per instance
    checkout: str = "auto"
    default_shell: Optional[str] = None
    job_timeout_minutes: Optional[float] = None
    keep_workspaces: bool = False
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.cache_dir = Path(self.cache_dir)
        self.work_dir = Path(self.work_dir)
        if self.checkout not in CHECKOUT_MODES:
            raise ValueError(f"checkout must be one of {CHECKOUT_MODES}, got {self.checkout!r}")
        if self.concurrency is not None and self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("MATRIXCI_WORKERS")
        timeout = env.get("MATRIXCI_JOB_TIMEOUT")
        return cls(
            cache_dir=Path(env.get("MATRIXCI_CACHE_DIR", DEFAULT_CACHE_DIR)),
            work_dir=Path(env.get("MATRIXCI_WORK_DIR", DEFAULT_WORK_DIR)),
            concurrency=int(workers) if workers else None,
            checkout=env.get("MATRIXCI_CHECKOUT", "auto"),
            default_shell=env.get("MATRIXCI_SHELL") or None,
            job_timeout_minutes=float(timeout) if timeout else None,
        )
