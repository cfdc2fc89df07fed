# shells.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

# ---------------------------------------------------------------------
# Shell table
# ---------------------------------------------------------------------
# A literal `run:` command is written to a script file and handed to a
# shell. "{0}" in the argv template is replaced by the script path.
# A step may name a shell from this table or give its own template,
# e.g. "perl {0}".


@dataclass(frozen=True)
class ShellSpec:
    argv: tuple[str, ...]
    ext: str
    prologue: str = ""
    epilogue: str = ""


_PWSH_PROLOGUE = "$ErrorActionPreference = 'stop'\n"
_PWSH_EPILOGUE = "\nif ((Test-Path -LiteralPath variable:\\LASTEXITCODE)) { exit $LASTEXITCODE }\n"

SHELLS: Dict[str, ShellSpec] = {
    "bash": ShellSpec(("bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"), ".sh"),
    "sh": ShellSpec(("sh", "-e", "{0}"), ".sh"),
    "pwsh": ShellSpec(("pwsh", "-NoLogo", "-NonInteractive", "-Command", ". '{0}'"), ".ps1",
                      _PWSH_PROLOGUE, _PWSH_EPILOGUE),
    "powershell": ShellSpec(("powershell", "-NoLogo", "-NonInteractive", "-Command", ". '{0}'"), ".ps1",
                            _PWSH_PROLOGUE, _PWSH_EPILOGUE),
    "cmd": ShellSpec(("cmd", "/D", "/E:ON", "/V:OFF", "/S", "/C", 'CALL "{0}"'), ".cmd"),
    "python": ShellSpec(("python", "{0}"), ".py"),
}


def default_shell() -> str:
    """Shell used when a step does not pick one: the host platform's native shell."""
    if sys.platform == "win32":
        return "pwsh" if shutil.which("pwsh") else "powershell"
    return "bash" if shutil.which("bash") else "sh"


def resolve_shell(name: Optional[str]) -> ShellSpec:
    name = (name or default_shell()).strip()
    if name in SHELLS:
        return SHELLS[name]
    if "{0}" in name:
        return ShellSpec(tuple(name.split()), "")
    raise ValueError(f"Unknown shell {name!r}. Known: {sorted(SHELLS)} or a template containing '{{0}}'")


def shell_argv(spec: ShellSpec, script: Path) -> List[str]:
    return [part.replace("{0}", str(script)) for part in spec.argv]


def write_script(spec: ShellSpec, script_dir: Path, stem: str, body: str) -> Path:
    path = script_dir / f"{stem}{spec.ext}"
    text = f"{spec.prologue}{body}{spec.epilogue}"
    if not text.endswith("\n"):
        text += "\n"
    path.write_text(text, encoding="utf-8")
    return path


@dataclass
class ShellResult:
    argv: List[str]
    exit_code: int
    output: str


def _kill_tree(proc: subprocess.Popen) -> None:
    """Kill the step's shell and everything it started."""
    if sys.platform == "win32":
        subprocess.run(["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                       stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        proc.kill()
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already gone


def run_script(
    body: str,
    *,
    shell: Optional[str],
    cwd: Path,
    env: Dict[str, str],
    script_dir: Path,
    stem: str,
    timeout: Optional[float] = None,
) -> ShellResult:
    """
    Run `body` under `shell` and return its exit code and combined output.

    The shell runs as the leader of its own process group. When `timeout`
    elapses the whole group is killed and subprocess.TimeoutExpired is
    raised with the output so far. Raises FileNotFoundError when the shell
    binary is missing.
    """
    spec = resolve_shell(shell)
    script = write_script(spec, script_dir, stem, body)
    argv = shell_argv(spec, script)

    if sys.platform == "win32":
        group = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    else:
        group = {"start_new_session": True}

    with subprocess.Popen(
        argv,
        cwd=str(cwd),
        env={**os.environ, **env},
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        **group,
    ) as proc:
        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            _kill_tree(proc)
            output, _ = proc.communicate()
            raise subprocess.TimeoutExpired(argv, e.timeout, output=output) from None
        finally:
            if proc.returncode is None:
                _kill_tree(proc)
    return ShellResult(argv=argv, exit_code=proc.returncode, output=output or "")
