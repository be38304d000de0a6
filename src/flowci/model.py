# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Job / step statuses
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
CANCELLED = "cancelled"
CACHED = "cached"

# statuses that unlock dependents
PASSING = (SUCCESS, CACHED)


@dataclass(frozen=True)
class Step:
    """A single task inside a job: a shell command (`run`) or an action (`uses`)."""
    name: str
    run: str | None = None
    uses: str | None = None
    id: str | None = None
    with_: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    if_: str | None = None
    working_directory: str | None = None
    shell: str | None = None
    continue_on_error: bool = False
    timeout_minutes: float | None = None


@dataclass
class CacheSpec:
    """Directories persisted across runs, keyed by the job definition and its inputs."""
    paths: List[str]
    key: str | None = None
    inputs: List[str] = field(default_factory=list)
    skip_on_hit: bool = False
    keep: int = 3
    enabled: bool = True
    exclude: List[str] = field(default_factory=list)


@dataclass
class Notification:
    type: str
    url: str | None = None
    on: List[str] = field(default_factory=lambda: ["failure"])
    channel: str | None = None
    template: str | None = None


@dataclass
class Strategy:
    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    fail_fast: bool = True
    max_parallel: Optional[int] = None


@dataclass
class Job:
    """
    A CI job: steps + dependencies + the environment it runs in.

    `id` is the key under `jobs:`; `needs` names other job ids. After matrix
    expansion each variant gets its own id and remembers the id it was
    expanded from in `template_id`.
    """
    id: str
    steps: List[Step]
    name: Optional[str] = None
    runs_on: str = "local"
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    secrets: List[str] = field(default_factory=list)
    strategy: Optional[Strategy] = None
    notifications: List[Notification] = field(default_factory=list)
    cache: Optional[CacheSpec] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    if_: Optional[str] = None
    container: Optional[str] = None
    timeout_minutes: Optional[float] = None
    continue_on_error: bool = False

    # git diff based selection
    paths: Optional[List[str]] = None

    # filled in by matrix expansion
    matrix_values: Dict[str, Any] = field(default_factory=dict)
    template_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def group(self) -> str:
        """Id of the job as written in the workflow (same as `id` unless expanded)."""
        return self.template_id or self.id


@dataclass
class Trigger:
    event: str
    branches: List[str] = field(default_factory=list)
    branches_ignore: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    triggers: List[Trigger] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    notifications: List[Notification] = field(default_factory=list)
    source: Optional[str] = None

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)


@dataclass
class Event:
    """The repository event a run is evaluated against."""
    name: str = "push"
    ref: Optional[str] = None
    branch: Optional[str] = None
    tag: Optional[str] = None
    sha: Optional[str] = None
    changed_files: Optional[List[str]] = None

    @classmethod
    def from_git(cls, name: str = "push", *, compare_ref: str | None = None) -> "Event":
        """Describe the current checkout as an event. Missing git info is left as None."""
        from .git_facts import git

        branch = sha = None
        changed: Optional[List[str]] = None
        try:
            branch = git.current_branch()
            sha = git.head_sha()
            if compare_ref:
                _head, changed = git.changed_files_since(compare_ref)
        except (OSError, git.GitError):
            pass
        ref = f"refs/heads/{branch}" if branch else None
        return cls(name=name, ref=ref, branch=branch, sha=sha, changed_files=changed)

    def as_context(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ref": self.ref or "",
            "branch": self.branch or "",
            "tag": self.tag or "",
            "sha": self.sha or "",
        }


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    step: str
    status: str
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None
    id: Optional[str] = None

    @property
    def outcome(self) -> str:
        return self.status


@dataclass
class JobResult:
    job_id: str
    status: str
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None
    matrix_values: Dict[str, Any] = field(default_factory=dict)
    allowed_failure: bool = False

    @property
    def passed(self) -> bool:
        return self.status in PASSING


@dataclass
class RunResult:
    workflow: str
    status: str
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    duration: float = 0.0
    run_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (SUCCESS, SKIPPED)

    def summary(self) -> Dict[str, str]:
        return {job_id: r.status for job_id, r in self.jobs.items()}
