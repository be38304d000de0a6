# artifacts.py
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import List

from .errors import ArtifactError

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ArtifactStore:
    """
    Files handed from one job to another within a run.

      root/
        <run_id>/
          <artifact name>/
            <paths relative to the uploading job's workspace>
    """

    def __init__(self, root: str | Path, run_id: str):
        self.root = Path(root).resolve()
        self.run_id = run_id
        self.run_dir = self.root / run_id

    def _dir(self, name: str) -> Path:
        if not _NAME_RE.match(name or ""):
            raise ArtifactError(f"Invalid artifact name {name!r} (letters, digits, '.', '-', '_')")
        return self.run_dir / name

    def upload(self, name: str, paths: List[str], workspace: str | Path) -> List[str]:
        """
        Copy files/dirs (globs allowed) into the artifact. Uploading to an
        existing name merges. Returns the relative paths stored.
        """
        ws = Path(workspace).resolve()
        dest = self._dir(name)
        stored: List[str] = []

        for pattern in paths:
            pattern = pattern.strip()
            if not pattern:
                continue
            direct = ws / pattern
            matches = [direct] if direct.exists() else sorted(ws.glob(pattern))
            if not matches:
                raise ArtifactError(f"No files found for path {pattern!r} (artifact {name!r})")
            for src in matches:
                src = src.resolve()
                try:
                    rel = src.relative_to(ws)
                except ValueError:
                    raise ArtifactError(f"Path {pattern!r} is outside the workspace") from None
                target = dest / rel
                if src.is_dir():
                    shutil.copytree(src, target, dirs_exist_ok=True)
                    stored.extend(p.relative_to(ws).as_posix() for p in sorted(src.rglob("*")) if p.is_file())
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, target)
                    stored.append(rel.as_posix())
        return stored

    def download(self, name: str, dest: str | Path) -> List[str]:
        """Copy an artifact's files into `dest`. Returns the relative paths restored."""
        src = self._dir(name)
        if not src.is_dir():
            raise ArtifactError(f"Artifact {name!r} not found in run {self.run_id}. Available: {self.list()}")
        target = Path(dest)
        target.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, target, dirs_exist_ok=True)
        return [p.relative_to(src).as_posix() for p in sorted(src.rglob("*")) if p.is_file()]

    def list(self) -> List[str]:
        if not self.run_dir.is_dir():
            return []
        return sorted(p.name for p in self.run_dir.iterdir() if p.is_dir())
