"""Tests for loading YAML and Python workflow files."""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from matrixci.errors import ConfigurationError, PipelineLoadError
from matrixci.loader import load_workflow
from matrixci.model import EventKind, TriggerRule
from matrixci.runner import plan

CI_YAML = """\
name: CI
triggers:
  - event: workflow_call
  - event: workflow_dispatch
  - event: push
    branches: [main]
  - event: pull_request
    branches: main
env:
  CARGO_TERM_COLOR: always
jobs:
  fmt:
    name: Rustfmt (${{ matrix.os }})
    runs_on: ${{ matrix.os }}
    matrix:
      axes:
        os: [macos-latest, ubuntu-latest, windows-latest]
    cache:
      paths: [target]
    steps:
      - uses: actions/checkout@v2
      - uses: toolchain@v1
        with:
          toolchain: nightly
          profile: minimal
      - name: Check formatting
        run: cargo fmt -- --check
        shell: bash
  test:
    needs: fmt
    matrix:
      axes:
        os: [macos-latest]
        retries: [1, 2]
      fail_fast: false
    steps:
      - run: cargo test
"""


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(textwrap.dedent(text))
    return p


class TestLoadYaml:
    def test_full_document(self, tmp_path):
        d = load_workflow(_write(tmp_path, "ci.yml", CI_YAML))
        assert d.name == "CI"
        assert d.env == {"CARGO_TERM_COLOR": "always"}
        assert d.triggers == [
            TriggerRule(EventKind.CALL),
            TriggerRule(EventKind.DISPATCH),
            TriggerRule(EventKind.PUSH, ("main",)),
            TriggerRule(EventKind.PULL_REQUEST, ("main",)),
        ]
        assert [j.name for j in d.jobs] == ["fmt", "test"]

        fmt = d.jobs[0]
        assert fmt.display_name == "Rustfmt (${{ matrix.os }})"
        assert fmt.matrix.axes == {"os": ("macos-latest", "ubuntu-latest", "windows-latest")}
        assert fmt.matrix.fail_fast is True
        assert fmt.cache.paths == ("target",)
        assert fmt.cache.lock_files == ("Cargo.lock",)
        assert fmt.steps[0].uses == "actions/checkout@v2"
        assert fmt.steps[1].inputs == {"toolchain": "nightly", "profile": "minimal"}
        assert fmt.steps[2].name == "Check formatting"
        assert fmt.steps[2].shell == "bash"

        test = d.jobs[1]
        assert test.needs == ["fmt"]
        assert test.matrix.fail_fast is False
        assert test.matrix.axes["retries"] == ("1", "2")
        assert test.steps[0].name == "cargo test"

    def test_default_trigger_is_dispatch(self, tmp_path):
        d = load_workflow(_write(tmp_path, "p.yaml", "jobs:\n  a:\n    steps:\n      - run: echo hi\n"))
        assert d.triggers == [TriggerRule(EventKind.DISPATCH)]

    def test_on_key_rejected(self, tmp_path):
        text = "on:\n  push: {}\njobs:\n  a:\n    steps:\n      - run: echo\n"
        with pytest.raises(PipelineLoadError, match="triggers"):
            load_workflow(_write(tmp_path, "p.yml", text))

    def test_unknown_key_rejected(self, tmp_path):
        text = "jobs:\n  a:\n    runs-on: linux\n    steps:\n      - run: echo\n"
        with pytest.raises(PipelineLoadError, match="Validation failed"):
            load_workflow(_write(tmp_path, "p.yml", text))

    def test_step_needs_run_or_uses(self, tmp_path):
        text = "jobs:\n  a:\n    steps:\n      - name: nothing\n"
        with pytest.raises(PipelineLoadError, match="exactly one of 'run' or 'uses'"):
            load_workflow(_write(tmp_path, "p.yml", text))

    def test_unknown_event(self, tmp_path):
        text = "triggers:\n  - event: schedule\njobs:\n  a:\n    steps:\n      - run: echo\n"
        with pytest.raises(PipelineLoadError, match="Unknown event kind"):
            load_workflow(_write(tmp_path, "p.yml", text))

    def test_absolute_cache_path_rejected(self, tmp_path):
        text = "jobs:\n  a:\n    cache:\n      paths: [/etc]\n    steps:\n      - run: echo\n"
        with pytest.raises(PipelineLoadError, match="relative"):
            load_workflow(_write(tmp_path, "p.yml", text))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(PipelineLoadError, match="Invalid YAML"):
            load_workflow(_write(tmp_path, "p.yml", "jobs: [unclosed\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(PipelineLoadError, match="mapping"):
            load_workflow(_write(tmp_path, "p.yml", "- a\n- b\n"))

    def test_load_error_is_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_workflow(tmp_path / "missing.yml")


class TestLoadPython:
    def test_workflow_function(self, tmp_path):
        p = _write(
            tmp_path,
            "ci_workflow.py",
            """\
            from matrixci import job, matrix, on_push, pipeline, sh

            def workflow():
                return pipeline(
                    job("fmt", sh("check", "cargo fmt -- --check"), matrix=matrix(os=["a", "b"])),
                    name="CI",
                    on=[on_push("main")],
                )
            """,
        )
        d = load_workflow(p)
        assert d.name == "CI"
        assert d.triggers == [TriggerRule(EventKind.PUSH, ("main",))]
        assert d.jobs[0].matrix.axes == {"os": ("a", "b")}

    def test_jobs_list(self, tmp_path):
        p = _write(
            tmp_path,
            "jobs_workflow.py",
            """\
            from matrixci import job, sh

            JOBS = [job("a", sh("x", "true")), job("b", sh("y", "true"), needs=["a"])]
            """,
        )
        d = load_workflow(p)
        assert d.name == "jobs_workflow"
        assert [j.name for j in d.jobs] == ["a", "b"]
        assert d.triggers == [TriggerRule(EventKind.DISPATCH)]

    def test_nothing_defined(self, tmp_path):
        p = _write(tmp_path, "empty_workflow.py", "X = 1\n")
        with pytest.raises(PipelineLoadError, match="workflow\\(\\), PIPELINE or JOBS"):
            load_workflow(p)

    def test_duplicate_jobs(self, tmp_path):
        p = _write(
            tmp_path,
            "dup_workflow.py",
            """\
            from matrixci import job, sh

            JOBS = [job("a", sh("x", "true")), job("a", sh("y", "true"))]
            """,
        )
        with pytest.raises(PipelineLoadError, match="Duplicate"):
            load_workflow(p)

    def test_unsupported_suffix(self, tmp_path):
        p = _write(tmp_path, "ci.toml", "")
        with pytest.raises(PipelineLoadError, match=".py, .yml or .yaml"):
            load_workflow(p)


class TestBundledPipeline:
    def test_repository_pipeline_validates(self):
        d = load_workflow(Path(__file__).resolve().parents[1] / "matrixci.yml")
        stages = plan(d)
        assert [[i.name for i in s] for s in stages] == [
            ["matrixci validate"],
            ["pytest (3.12)", "pytest (3.13)"],
        ]
        assert stages[1][1].continue_on_error

    def test_repository_pipeline_caches_only_pip_downloads(self):
        d = load_workflow(Path(__file__).resolve().parents[1] / "matrixci.yml")
        test = next(j for j in d.jobs if j.name == "test")
        assert test.cache.paths == (".pip-cache",)
        assert test.env["PIP_CACHE_DIR"] == ".pip-cache"
        create = next(s for s in test.steps if s.name == "Create venv")
        assert create.run.strip() == "$PYTHON -m venv .venv"
