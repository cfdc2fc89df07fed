# capabilities/toolchain.py
from __future__ import annotations

from ..model import Step
from .base import StepContext, required_input


def toolchain(ctx: StepContext, step: Step) -> str:
    """
    Select a toolchain for the remaining steps of this instance.

    Inputs:
      toolchain  name/version, e.g. "nightly" (required)
      profile    optional, exported as MATRIXCI_TOOLCHAIN_PROFILE
      export     env var to set to the toolchain name (default MATRIXCI_TOOLCHAIN)
      install    optional command that installs it; "{toolchain}" and
                 "{profile}" are substituted
    """
    name = required_input(ctx, step, "toolchain")
    profile = step.inputs.get("profile", "").strip()
    var = step.inputs.get("export", "").strip() or "MATRIXCI_TOOLCHAIN"

    output = ""
    install = step.inputs.get("install", "").strip()
    if install:
        cmd = install.replace("{toolchain}", name).replace("{profile}", profile)
        output = ctx.run_shell(step, cmd).output

    ctx.env[var] = name
    if profile:
        ctx.env["MATRIXCI_TOOLCHAIN_PROFILE"] = profile
    return output + f"toolchain {name}{f' ({profile})' if profile else ''} -> ${var}\n"
