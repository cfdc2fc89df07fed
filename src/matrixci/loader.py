"""Load pipeline definitions from YAML documents or Python workflow files."""

from __future__ import annotations

import runpy
from pathlib import Path

import yaml
from pydantic import ValidationError

from .errors import ConfigurationError, PipelineLoadError
from .model import EventKind, JobTemplate, PipelineDefinition, TriggerRule
from .schema import PipelineModel

YAML_SUFFIXES = (".yml", ".yaml")


def load_yaml(path: Path) -> PipelineDefinition:
    """Read a YAML file and validate it as a pipeline definition."""
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PipelineLoadError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise PipelineLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise PipelineLoadError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    if True in data:
        # YAML 1.1 reads a bare `on:` key as boolean true
        raise PipelineLoadError(f"{path}: use 'triggers:' to declare triggers, not 'on:'")

    try:
        return PipelineModel.model_validate(data).to_definition()
    except ValidationError as e:
        raise PipelineLoadError(f"Validation failed for {path}:\n{e}") from e
    except ConfigurationError as e:
        raise PipelineLoadError(f"Invalid pipeline {path}: {e}") from e


def load_python(path: Path) -> PipelineDefinition:
    """
    Load a workflow from a python file.

    The file must define one of:
      - workflow() -> PipelineDefinition | List[JobTemplate]
      - PIPELINE = PipelineDefinition(...)
      - JOBS = [JobTemplate, ...]

    Bare job lists run on manual dispatch only.
    """
    module_name = f"matrixci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except ConfigurationError as e:
        raise PipelineLoadError(f"Invalid pipeline {path}: {e}") from e

    obj = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            obj = globals_dict["workflow"]()
        except ConfigurationError as e:
            raise PipelineLoadError(f"Invalid pipeline {path}: {e}") from e
    elif "PIPELINE" in globals_dict:
        obj = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]

    if isinstance(obj, PipelineDefinition):
        return obj
    if isinstance(obj, list) and obj and all(isinstance(j, JobTemplate) for j in obj):
        try:
            return PipelineDefinition(
                name=path.stem,
                jobs=obj,
                triggers=[TriggerRule(EventKind.DISPATCH)],
            )
        except ConfigurationError as e:
            raise PipelineLoadError(f"Invalid pipeline {path}: {e}") from e

    raise PipelineLoadError(
        f"{path}: workflow must return/define a PipelineDefinition or a List[JobTemplate]. "
        "Define workflow(), PIPELINE or JOBS."
    )


def load_workflow(path: str | Path) -> PipelineDefinition:
    """Load a definition from a .yml/.yaml document or a .py workflow file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise PipelineLoadError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return load_python(wf_path)
    raise PipelineLoadError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")
