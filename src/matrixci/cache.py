# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CacheError
from .model import JobInstance

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Job-level caching:
#   cache_key = hash(
#       job template name,
#       target OS (the instance's runs_on),
#       toolchain identity,
#       contents of the dependency lock files,
#   )
#
# Artifact:
#   a tar.gz of the job's cache paths (relative to the workspace) plus
#   a manifest.json for explainability.
#
# Writes go to a unique temp file in the destination directory and are
# then os.replace()d into place: concurrent saves of the same key are
# last-writer-wins and readers never see a partial archive.
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".matrixci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_MANIFEST_PREFIX = ".matrixci_cache_manifest/"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    # lexical, so a symlink is named by where it sits, not where it points
    return p.relative_to(root).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    """
    Files and symlinks below root, in a deterministic order.

    Symlinked directories are yielded as links and never descended into.
    """
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        links = [d for d in dirnames if (base / d).is_symlink()]
        for name in sorted([*filenames, *links]):
            yield base / name


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths under root.
    Supports plain paths ("Cargo.lock", "target/") and globs ("**/Cargo.lock").
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # de-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def lock_fingerprint(workspace: Path, lock_files: Sequence[str]) -> Tuple[str, Dict]:
    """Content hash of the dependency lock files; missing files hash as absent."""
    entries: List[Tuple[str, str]] = []
    for p in _resolve_globs(workspace, lock_files):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            if not f.is_file():
                continue
            entries.append((_relpath(f, workspace), _hash_file_contents(f)))
    entries.sort()
    payload = {"files": entries, "patterns": list(lock_files)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def toolchain_identity(instance: JobInstance) -> str:
    """
    Toolchain part of the cache key: the template's `toolchain`, else the
    input given to a `toolchain` capability step, else "default".
    """
    if instance.template.toolchain:
        return instance.template.toolchain
    for step in instance.steps:
        if step.capability == "toolchain" and step.inputs.get("toolchain"):
            return step.inputs["toolchain"]
    return "default"


def compute_cache_key(instance: JobInstance, workspace: str | Path) -> Tuple[str, Dict]:
    """Returns (cache_key, manifest) for one instance checked out at `workspace`."""
    spec = instance.template.cache
    lock_files = list(spec.lock_files) if spec else []
    lock_hash, lock_manifest = lock_fingerprint(Path(workspace), lock_files)

    payload = {
        "v": 1,  # bump this if you change hashing format
        "job": instance.job,
        "os": instance.runs_on,
        "toolchain": toolchain_identity(instance),
        "lock": lock_hash,
        "paths": list(spec.paths) if spec else [],
    }
    key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": key,
        "payload": payload,
        "lock_files": lock_manifest,
        "generated_at_unix": int(time.time()),
    }
    return key, manifest


def _tar_add_link(tar: tarfile.TarFile, root: Path, link: Path, rel: str) -> None:
    """
    Store a symlink relative to its own directory so extraction with the
    "data" filter accepts it. Links leaving the workspace are not cached.
    """
    try:
        target = (link.parent / os.readlink(link)).resolve()
    except (OSError, RuntimeError) as e:  # symlink loop
        logger.info("not caching %s: %s", rel, e)
        return
    if not target.is_relative_to(root.resolve()):
        logger.info("not caching %s: link points outside the workspace (%s)", rel, target)
        return
    info = tar.gettarinfo(str(link), arcname=rel)
    info.linkname = os.path.relpath(target, link.parent.resolve())
    tar.addfile(info)


def _tar_add_path(tar: tarfile.TarFile, root: Path, src: Path, *, exclude_globs: List[str]) -> None:
    """Add src (file/dir/link) into tar under its path relative to root."""
    if not src.exists() and not src.is_symlink():
        return
    files = [src] if src.is_symlink() or not src.is_dir() else list(_iter_files_under(src))
    for f in files:
        rel = _relpath(f, root)
        if _matches_any_glob(rel, exclude_globs):
            continue
        if f.is_symlink():
            _tar_add_link(tar, root, f, rel)
        else:
            tar.add(str(f), arcname=rel, recursive=False)


def _atomic_write(dest: Path, write) -> None:
    """Write via a unique sibling temp file, then replace dest in one step."""
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            write(fh)
        os.replace(tmp, dest)
    finally:
        tmp.unlink(missing_ok=True)


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", text).strip("-") or "default"


def binding_scope(instance: JobInstance) -> str:
    """
    Directory name for one matrix binding of a job. Pruning works inside
    it, so siblings never evict each other's artifacts.
    The digest keeps apart jobs and bindings whose names slug alike.
    """
    label = "-".join(instance.binding.values()) or "default"
    digest = _sha256_str(
        _json_dumps_stable({"job": instance.job, "os": instance.runs_on, "binding": instance.binding})
    )
    return f"{_slug(label)[:40]}-{digest[:12]}"


class CacheStore:
    """
    File-based cache store:
      root/
        <job_name>/
          <binding scope>/
            <key>.tar.gz
            <key>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _scope_dir(self, instance: JobInstance) -> Path:
        d = self.root / _slug(instance.job) / binding_scope(instance)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, instance: JobInstance, key: str) -> Path:
        return self._scope_dir(instance) / f"{key}.tar.gz"

    def manifest_path(self, instance: JobInstance, key: str) -> Path:
        return self._scope_dir(instance) / f"{key}.manifest.json"

    def restore(self, instance: JobInstance, workspace: str | Path) -> CacheHit:
        """
        Restore cached paths into the workspace ("overwrite by extraction").

        A miss is not an error, also when the artifact is pruned while we
        look at it. Raises CacheError if an artifact exists but cannot be
        extracted.
        """
        spec = instance.template.cache
        if spec is None or not spec.enabled:
            return CacheHit(hit=False, key="", reason="cache disabled for job", manifest={})

        root = Path(workspace).resolve()
        key, manifest = compute_cache_key(instance, root)
        art = self.artifact_path(instance, key)
        try:
            tar = tarfile.open(str(art), mode="r:gz")
        except FileNotFoundError:
            return CacheHit(hit=False, key=key, reason="cache miss", manifest=manifest)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CacheError(f"cache artifact {art.name} could not be opened: {e}") from e

        try:
            with tar:
                members = [m for m in tar.getmembers() if not m.name.startswith(_MANIFEST_PREFIX)]
                tar.extractall(path=str(root), members=members, filter="data")
        except (tarfile.TarError, OSError, EOFError) as e:
            raise CacheError(f"cache artifact {art.name} could not be restored: {e}") from e

        stored: Dict = {}
        try:
            stored = json.loads(self.manifest_path(instance, key).read_text(encoding="utf-8"))
        except FileNotFoundError:
            pass
        logger.debug("[%s] restored cache %s", instance.id, key[:12])
        return CacheHit(hit=True, key=key, reason="cache hit: restored artifact", manifest=stored or manifest)

    def save(
        self,
        instance: JobInstance,
        workspace: str | Path,
        key: Optional[str] = None,
        manifest: Optional[Dict] = None,
    ) -> Tuple[str, Dict]:
        """
        Save the job's cache paths for this key. Returns (key, manifest).

        Safe to call redundantly, also from concurrent instances that share a
        fingerprint: every write is a whole-file replace.
        """
        root = Path(workspace).resolve()
        if key is None or manifest is None:
            key, manifest = compute_cache_key(instance, root)

        spec = instance.template.cache
        if spec is None or not spec.enabled:
            return key, manifest

        manifest_bytes = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")

        def write_tar(fh) -> None:
            with tarfile.open(fileobj=fh, mode="w:gz") as tar:
                for entry in spec.paths:
                    src = Path(os.path.normpath(root / entry))
                    if not src.is_relative_to(root):
                        logger.info("[%s] not caching %s: outside the workspace", instance.id, entry)
                        continue
                    _tar_add_path(tar, root, src, exclude_globs=DEFAULT_CACHE_EXCLUDES)
                info = tarfile.TarInfo(name=f"{_MANIFEST_PREFIX}{key}.manifest.json")
                info.size = len(manifest_bytes)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(manifest_bytes))

        _atomic_write(self.artifact_path(instance, key), write_tar)
        _atomic_write(self.manifest_path(instance, key), lambda fh: fh.write(manifest_bytes))
        logger.debug("[%s] saved cache %s", instance.id, key[:12])
        return key, manifest

    def prune(self, instance: JobInstance, keep: int = 3) -> None:
        """Keep only the newest N artifacts for this binding of the job (by mtime)."""
        d = self._scope_dir(instance)
        dated = []
        for p in d.glob("*.tar.gz"):
            try:
                dated.append((p.stat().st_mtime, p))
            except FileNotFoundError:
                continue  # pruned by a concurrent run
        dated.sort(key=lambda t: t[0], reverse=True)
        for _, p in dated[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
