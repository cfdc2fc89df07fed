"""Tests for the job cache store."""

from __future__ import annotations

import os
import sys
import tarfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

import matrixci.cache as cache_mod
from matrixci.cache import CacheStore, binding_scope, compute_cache_key, toolchain_identity
from matrixci.errors import CacheError
from matrixci.matrix import expand
from matrixci.model import CacheSpec, JobTemplate, Step

from conftest import make_job


def _instance(**kwargs):
    kwargs.setdefault("cache", CacheSpec(paths=("target",)))
    return expand(make_job("build", **kwargs))[0]


def _workspace(root: Path, lock: str = "# lock v1\n") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.lock").write_text(lock)
    return root


class TestCacheKey:
    def test_stable_for_same_inputs(self, tmp_path):
        ws = _workspace(tmp_path / "ws")
        inst = _instance()
        assert compute_cache_key(inst, ws)[0] == compute_cache_key(inst, ws)[0]

    def test_changes_with_lock_contents(self, tmp_path):
        inst = _instance()
        a = compute_cache_key(inst, _workspace(tmp_path / "a"))[0]
        b = compute_cache_key(inst, _workspace(tmp_path / "b", lock="# lock v2\n"))[0]
        assert a != b

    def test_changes_with_os(self, tmp_path):
        ws = _workspace(tmp_path / "ws")
        linux = _instance(runs_on="linux")
        mac = _instance(runs_on="macos")
        assert compute_cache_key(linux, ws)[0] != compute_cache_key(mac, ws)[0]

    def test_toolchain_from_capability_step(self):
        template = JobTemplate(
            name="build",
            steps=[Step(name="tc", uses="toolchain@v1", inputs={"toolchain": "nightly"})],
        )
        assert toolchain_identity(expand(template)[0]) == "nightly"

    def test_toolchain_default(self):
        assert toolchain_identity(_instance()) == "default"
        assert toolchain_identity(_instance(toolchain="1.80")) == "1.80"


class TestCacheStore:
    def test_miss_then_hit(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()

        ws1 = _workspace(tmp_path / "ws1")
        miss = store.restore(inst, ws1)
        assert not miss.hit
        (ws1 / "target").mkdir()
        (ws1 / "target" / "lib.o").write_text("object")
        key, _ = store.save(inst, ws1, miss.key, miss.manifest)
        assert key == miss.key
        assert store.artifact_path(inst, key).exists()

        ws2 = _workspace(tmp_path / "ws2")
        hit = store.restore(inst, ws2)
        assert hit.hit
        assert (ws2 / "target" / "lib.o").read_text() == "object"
        assert not (ws2 / ".matrixci_cache_manifest").exists()

    def test_save_twice_then_restore_gives_same_content(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        ws = _workspace(tmp_path / "ws")
        (ws / "target" / "deps").mkdir(parents=True)
        (ws / "target" / "a").write_text("1")
        (ws / "target" / "deps" / "b.rlib").write_bytes(b"\x00\x01")
        k1, _ = store.save(inst, ws)
        k2, _ = store.save(inst, ws)
        assert k1 == k2
        assert len(list(store.artifact_path(inst, k1).parent.glob("*.tar.gz"))) == 1

        ws2 = _workspace(tmp_path / "ws2")
        assert store.restore(inst, ws2).hit
        assert (ws2 / "target" / "a").read_text() == "1"
        assert (ws2 / "target" / "deps" / "b.rlib").read_bytes() == b"\x00\x01"

    def test_concurrent_saves_of_one_key(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        workspaces = []
        for i in range(6):
            ws = _workspace(tmp_path / f"ws{i}")
            (ws / "target").mkdir()
            (ws / "target" / "out.bin").write_bytes(b"x" * 200_000)
            workspaces.append(ws)

        with ThreadPoolExecutor(max_workers=6) as pool:
            keys = {k for k, _ in pool.map(lambda ws: store.save(inst, ws), workspaces)}

        (key,) = keys
        scope = store.artifact_path(inst, key).parent
        assert sorted(p.name for p in scope.iterdir()) == [f"{key}.manifest.json", f"{key}.tar.gz"]
        ws = _workspace(tmp_path / "restored")
        assert store.restore(inst, ws).hit
        assert (ws / "target" / "out.bin").read_bytes() == b"x" * 200_000

    def test_corrupt_artifact_raises(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        ws = _workspace(tmp_path / "ws")
        key, _ = compute_cache_key(inst, ws.resolve())
        store.artifact_path(inst, key).write_bytes(b"not a tarball")
        with pytest.raises(CacheError):
            store.restore(inst, ws)

    def test_artifact_vanishing_before_open_is_a_miss(self, tmp_path, monkeypatch):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        ws = _workspace(tmp_path / "ws")

        def gone(name, *args, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", name)

        monkeypatch.setattr(cache_mod.tarfile, "open", gone)
        result = store.restore(inst, ws)
        assert not result.hit
        assert result.reason == "cache miss"

    def test_missing_cache_path_saves_empty_archive(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        ws = _workspace(tmp_path / "ws")
        key, _ = store.save(inst, ws)
        with tarfile.open(store.artifact_path(inst, key)) as tar:
            names = tar.getnames()
        assert all(n.startswith(".matrixci_cache_manifest/") for n in names)

    def test_prune_keeps_newest(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        keys = []
        for i in range(4):
            ws = _workspace(tmp_path / f"ws{i}", lock=f"# lock {i}\n")
            keys.append(store.save(inst, ws)[0])
            os.utime(store.artifact_path(inst, keys[-1]), (1_000_000 + i, 1_000_000 + i))
        store.prune(inst, keep=2)
        scope = store.artifact_path(inst, keys[0]).parent
        assert sorted(p.name for p in scope.glob("*.tar.gz")) == sorted(f"{k}.tar.gz" for k in keys[2:])
        assert len(list(scope.glob("*.manifest.json"))) == 2

    def test_prune_tolerates_vanished_artifact(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        scope = store.artifact_path(inst, "k").parent
        # what a concurrent prune leaves behind between glob and stat
        (scope / "gone.tar.gz").symlink_to(scope / "nowhere")
        store.prune(inst, keep=0)


class TestCacheScopes:
    def test_siblings_do_not_evict_each_other(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        template = make_job("build", matrix={"os": ["a", "b", "c", "d"]}, cache=CacheSpec(paths=("target",)))
        instances = expand(template)

        hits = {}
        for run in ("r1", "r2"):
            for inst in instances:
                ws = _workspace(tmp_path / run / inst.binding["os"])
                hit = store.restore(inst, ws)
                hits[run, inst.id] = hit.hit
                (ws / "target").mkdir(exist_ok=True)
                (ws / "target" / "out").write_text(inst.id)
                store.save(inst, ws, hit.key, hit.manifest)
                store.prune(inst, keep=3)

        assert not any(hits["r1", i.id] for i in instances)
        assert all(hits["r2", i.id] for i in instances)

    def test_scope_names_differ_for_lookalike_bindings(self):
        a, b = expand(make_job("build", matrix={"os": ["a b", "a/b"]}))
        assert binding_scope(a) != binding_scope(b)
        assert binding_scope(a).startswith("a-b-")


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
class TestCacheSymlinks:
    def test_link_leaving_workspace_is_not_cached(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance(cache=CacheSpec(paths=(".venv",), lock_files=()))
        ws = _workspace(tmp_path / "ws")
        (ws / ".venv" / "bin").mkdir(parents=True)
        (ws / ".venv" / "bin" / "python").symlink_to(sys.executable)
        (ws / ".venv" / "pyvenv.cfg").write_text("home = /usr/bin\n")

        key, _ = store.save(inst, ws)
        with tarfile.open(store.artifact_path(inst, key)) as tar:
            names = tar.getnames()
        assert ".venv/pyvenv.cfg" in names
        assert ".venv/bin/python" not in names

        ws2 = _workspace(tmp_path / "ws2")
        assert store.restore(inst, ws2).hit
        assert (ws2 / ".venv" / "pyvenv.cfg").exists()
        assert not (ws2 / ".venv" / "bin" / "python").exists()

    def test_links_inside_workspace_round_trip(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        ws = _workspace(tmp_path / "ws")
        (ws / "target" / "release").mkdir(parents=True)
        (ws / "target" / "release" / "app").write_text("binary")
        (ws / "target" / "relative").symlink_to(Path("release") / "app")
        (ws / "target" / "absolute").symlink_to((ws / "target" / "release" / "app").resolve())
        (ws / "target" / "latest").symlink_to("release", target_is_directory=True)

        store.save(inst, ws)
        ws2 = _workspace(tmp_path / "ws2")
        assert store.restore(inst, ws2).hit
        for name in ("relative", "absolute"):
            link = ws2 / "target" / name
            assert link.is_symlink()
            assert link.read_text() == "binary"
        assert (ws2 / "target" / "latest").is_symlink()
        assert (ws2 / "target" / "latest" / "app").read_text() == "binary"

    def test_linked_directory_outside_is_not_followed(self, tmp_path):
        store = CacheStore(tmp_path / "cache")
        inst = _instance()
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        (outside / "secret").write_text("do not cache")
        ws = _workspace(tmp_path / "ws")
        (ws / "target").mkdir()
        (ws / "target" / "ext").symlink_to(outside, target_is_directory=True)

        key, _ = store.save(inst, ws)
        with tarfile.open(store.artifact_path(inst, key)) as tar:
            assert not [n for n in tar.getnames() if n.startswith("target/ext")]
