# git.py
# Repository facts for a run: branch, sha and the files a change touched.
# Everything shells out to the git CLI through _git().

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Tuple


class GitError(Exception):
    """A git command exited non-zero."""


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Run `git <args>` and return stripped stdout.

    Raises:
        GitError: git exited non-zero (not a repo, unknown ref, ...)
        FileNotFoundError: git is not installed
    """
    proc = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        capture_output=True,
    )
    if proc.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {proc.stderr.strip()}")
    return proc.stdout.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Used for FLOWCI_SHA and the `event.sha` context."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Name of the checked out branch, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    True if the working tree has modified, staged or untracked files.
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Paths are relative to the repository root.
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files_since(
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> Tuple[Optional[str], List[str]]:
    """
    Files a local run should treat as changed, as (head, files).

    On a dirty tree head is None and files are the uncommitted changes
    (staged, unstaged and untracked). On a clean tree head is the HEAD sha
    and files are the diff against the merge base with `compare_ref`.
    """
    root = repo_root(cwd)

    if is_dirty(root):
        # staged + unstaged + untracked
        files = set()
        files.update(_lines(_git(["diff", "--name-only"], cwd=root)))
        files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=root)))
        files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=root)))
        return None, sorted(files)

    head = head_sha(root)
    try:
        base = merge_base(compare_ref, cwd=root)
    except GitError:
        # no remote configured, unrelated history, ...
        base = "HEAD~1"

    try:
        return head, changed_files(base, "HEAD", cwd=root)
    except GitError:
        # first commit: treat every tracked file as changed
        return head, _lines(_git(["ls-files"], cwd=root))


def checkout(ref: str, cwd: Optional[str | Path] = None) -> None:
    _git(["checkout", "--quiet", ref], cwd=cwd)
