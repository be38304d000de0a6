# cache.py
from __future__ import annotations

import hashlib
import io
import json
import shutil
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .model import Job
from .triggers import glob_match

# ---------------------------------------------------------------------
# Job-level caching
# ---------------------------------------------------------------------
#   cache_key = sha256(
#       job id,
#       step commands / actions + working directories,
#       job env,
#       matrix values,
#       the user's `key` string (already interpolated),
#       contents of declared input files/dirs (globs),
#   )
#
# Cache artifact:
#   a tar.gz containing the job's cache `paths` plus a manifest.json
#   for explainability.
#
#   root/
#     <job_id>/
#       <key>.tar.gz
#       <key>.manifest.json
# ---------------------------------------------------------------------

DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".flowci/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

MANIFEST_DIR = ".flowci_cache_manifest"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root.resolve()).as_posix()


def _is_within(p: Path, root: Path) -> bool:
    try:
        p.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    return any(glob_match(rel, g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(workspace: Path, patterns: List[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "pyproject.toml"
      - dir path:  "src/"
      - glob:      "backend/**", "tests/**/*.py"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = workspace / pat
        if p.exists():
            out.append(p)
            continue
        try:
            out.extend(m for m in sorted(workspace.glob(pat)) if m.exists())
        except (ValueError, NotImplementedError):
            # absolute or otherwise unsupported pattern; contributes nothing
            continue

    # de-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def _hash_inputs(workspace: Path, inputs: List[str], *, excludes: List[str]) -> Tuple[str, Dict]:
    """
    Hash the declared input set deterministically: relative paths,
    contents and sizes of every file.
    """
    file_fps: List[Tuple[str, str, int]] = []
    for p in _resolve_globs(workspace, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p)) if p.is_dir() else []
        for f in files:
            if not _is_within(f, workspace):
                continue
            rel = _relpath(f, workspace)
            if _matches_any_glob(rel, excludes):
                continue
            file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))

    file_fps.sort(key=lambda t: t[0])
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_cache_key(
    job: Job,
    *,
    workspace: str | Path = ".",
    key: Optional[str] = None,
) -> Tuple[str, Dict]:
    """
    Returns (cache_key, manifest) where the manifest explains what went into the key.

    `key` is the job's cache key string after ${{ }} interpolation; when
    omitted the raw `job.cache.key` is used.
    """
    root = Path(workspace).resolve()
    spec = job.cache
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(spec.exclude if spec else [])

    steps = [
        {
            "name": s.name,
            "run": s.run,
            "uses": s.uses,
            "with": dict(sorted(s.with_.items())),
            "cwd": s.working_directory or ".",
        }
        for s in job.steps
    ]

    inputs = list(spec.inputs) if spec else []
    inputs_hash, inputs_manifest = _hash_inputs(root, inputs, excludes=exclude_globs)

    payload = {
        "v": 1,  # bump this if the hashing format changes
        "job": job.id,
        "steps": steps,
        "env": dict(job.env),
        "matrix": {k: str(v) for k, v in job.matrix_values.items()},
        "key": key if key is not None else (spec.key if spec else None),
        "paths": list(spec.paths) if spec else [],
        "inputs_hash": inputs_hash,
    }

    cache_key = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "key": cache_key,
        "payload": payload,
        "inputs": inputs_manifest,
        "excludes": exclude_globs,
        "generated_at_unix": int(time.time()),
    }
    return cache_key, manifest


def _tar_add_path(tar: tarfile.TarFile, workspace: Path, src: Path, *, exclude_globs: List[str]) -> int:
    """Add src (file/dir) to the archive by workspace-relative path. Returns files added."""
    if not src.exists():
        return 0
    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, workspace)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added += 1
    return added


def _safe_members(tar: tarfile.TarFile, dest: Path) -> List[tarfile.TarInfo]:
    members = []
    for m in tar.getmembers():
        if m.name.startswith(MANIFEST_DIR + "/"):
            continue
        if m.issym() or m.islnk() or m.isdev():
            raise ValueError(f"refusing to extract link or device: {m.name}")
        if not _is_within(dest / m.name, dest):
            raise ValueError(f"refusing to extract outside workspace: {m.name}")
        members.append(m)
    return members


class CacheStore:
    """File-based cache store, one directory per job."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _job_dir(self, job_id: str) -> Path:
        d = self.root / job_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, job_id: str, key: str) -> Path:
        return self._job_dir(job_id) / f"{key}.tar.gz"

    def manifest_path(self, job_id: str, key: str) -> Path:
        return self._job_dir(job_id) / f"{key}.manifest.json"

    def restore(self, job: Job, *, workspace: str | Path = ".", key: Optional[str] = None) -> CacheHit:
        """
        Restore cached paths into the workspace.

        Restore overwrites by extraction; stale files that are not in the
        archive are left alone.
        """
        spec = job.cache
        if spec is None or not spec.paths:
            return CacheHit(hit=False, key="", reason="no cache paths specified", manifest={})
        if not spec.enabled:
            return CacheHit(hit=False, key="", reason="cache disabled for job", manifest={})

        root = Path(workspace).resolve()
        cache_key, manifest = compute_cache_key(job, workspace=root, key=key)

        art = self.artifact_path(job.id, cache_key)
        man = self.manifest_path(job.id, cache_key)
        if not art.exists() or not man.exists():
            return CacheHit(hit=False, key=cache_key, reason="cache miss", manifest=manifest)

        try:
            with tarfile.open(str(art), mode="r:gz") as tar:
                tar.extractall(path=str(root), members=_safe_members(tar, root))
        except (OSError, tarfile.TarError, ValueError) as e:
            return CacheHit(hit=False, key=cache_key, reason=f"cache exists but restore failed: {e}", manifest=manifest)

        try:
            stored = json.loads(man.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}

        return CacheHit(hit=True, key=cache_key, reason="restored artifact", manifest=stored or manifest)

    def save(self, job: Job, *, workspace: str | Path = ".", key: Optional[str] = None) -> Tuple[str, Dict]:
        """
        Archive the job's cache paths under its key. Returns (key, manifest).

        The archive is written to a temp file and renamed into place, so a
        concurrent restore never sees a half-written artifact.
        """
        root = Path(workspace).resolve()
        cache_key, manifest = compute_cache_key(job, workspace=root, key=key)
        spec = job.cache
        if spec is None or not spec.enabled or not spec.paths:
            return cache_key, manifest

        exclude_globs = manifest["excludes"]
        art = self.artifact_path(job.id, cache_key)
        man = self.manifest_path(job.id, cache_key)

        skipped: List[str] = []
        count = 0
        tmp = art.with_name(art.name + ".tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in spec.paths:
                    src = (root / Path(entry).expanduser()).resolve()
                    if not _is_within(src, root):
                        skipped.append(entry)
                        continue
                    count += _tar_add_path(tar, root, src, exclude_globs=exclude_globs)

                manifest["files"] = count
                manifest["skipped_paths"] = skipped
                payload = json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False).encode("utf-8")
                info = tarfile.TarInfo(name=f"{MANIFEST_DIR}/{job.id}/{cache_key}.manifest.json")
                info.size = len(payload)
                info.mtime = int(time.time())
                tar.addfile(info, fileobj=io.BytesIO(payload))

            tmp.replace(art)
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8")
        finally:
            tmp.unlink(missing_ok=True)

        return cache_key, manifest

    def prune(self, job_id: str, keep: int = 3) -> List[str]:
        """Keep only the newest `keep` artifacts for a job (by mtime). Returns removed keys."""
        d = self._job_dir(job_id)
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = []
        for p in tars[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
            removed.append(key)
        return removed

    def entries(self, job_id: Optional[str] = None) -> List[Dict]:
        """Stored artifacts as dicts (job, key, size, mtime), newest first."""
        out = []
        dirs = [self.root / job_id] if job_id else sorted(p for p in self.root.iterdir() if p.is_dir())
        for d in dirs:
            if not d.is_dir():
                continue
            for art in d.glob("*.tar.gz"):
                st = art.stat()
                out.append({
                    "job": d.name,
                    "key": art.name[: -len(".tar.gz")],
                    "size": st.st_size,
                    "mtime": st.st_mtime,
                })
        return sorted(out, key=lambda e: e["mtime"], reverse=True)

    def clear(self, job_id: Optional[str] = None) -> int:
        """Delete stored artifacts (all, or one job's). Returns the number removed."""
        count = len(self.entries(job_id))
        if job_id:
            shutil.rmtree(self.root / job_id, ignore_errors=True)
        else:
            for d in self.root.iterdir():
                if d.is_dir():
                    shutil.rmtree(d, ignore_errors=True)
        return count
