# runner.py
from __future__ import annotations

import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Set, Tuple, Union

from .artifacts import ArtifactStore
from .cache import CacheStore
from .dag import ancestors, build_dag, expanded_jobs, topo_levels
from .executor import JobExecutor, RunContext
from .expressions import uses_status_function
from .git_facts import git
from .model import (
    CANCELLED,
    FAILURE,
    SKIPPED,
    SUCCESS,
    Event,
    Job,
    JobResult,
    RunResult,
    Workflow,
)
from .notify import Notifier, NotifyEvent
from .secrets import SecretStore
from .settings import DEFAULT_ARTIFACT_DIR, DEFAULT_CACHE_DIR, default_workers
from .triggers import match_patterns, matches
from .ui.console import Console, get_console

# local dev ---> commit ---> CI


def new_run_id() -> str:
    return time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]


# ----------------------------------------------------------------------
# Planning (selection)
# ----------------------------------------------------------------------

def select_jobs(
    jobs: List[Job],
    *,
    use_git_diff: bool,
    changed_files: Optional[List[str]],
) -> Tuple[Set[str], Dict[str, str]]:
    """
    Decide which jobs should run based on their `paths`.

    Returns (selected ids, reasons) where reasons holds a line for every job.
    """
    selected: Set[str] = set()
    reasons: Dict[str, str] = {}

    if not use_git_diff or changed_files is None:
        for j in jobs:
            selected.add(j.id)
            reasons[j.id] = "git diff disabled" if not use_git_diff else "no diff available"
        return selected, reasons

    for j in jobs:
        # no paths -> always run
        if not j.paths:
            selected.add(j.id)
            reasons[j.id] = "no paths specified"
            continue
        if any(match_patterns(f, j.paths) for f in changed_files):
            selected.add(j.id)
            reasons[j.id] = f"matched {j.paths}"
        else:
            reasons[j.id] = f"no changed file matches {j.paths}"
    return selected, reasons


def restrict_to(jobs: List[Job], only: Optional[List[str]]) -> List[Job]:
    """Named jobs (ids or matrix template ids) plus everything they need."""
    if not only:
        return list(jobs)
    keep = ancestors(jobs, list(only))
    return [j for j in jobs if j.id in keep]


def _group_result(results: List[JobResult]) -> str:
    statuses = [r.status for r in results]
    if any(r.status == FAILURE and not r.allowed_failure for r in results):
        return FAILURE
    if CANCELLED in statuses:
        return CANCELLED
    if statuses and all(s == SKIPPED for s in statuses):
        return SKIPPED
    return SUCCESS


def needs_context(job: Job, by_id: Mapping[str, Job], results: Mapping[str, JobResult]) -> Dict[str, dict]:
    """
    The `needs` expression context of a job.

    Keyed by concrete job id, and for matrix dependencies also by the
    template id (result aggregated, outputs merged in variant order).
    """
    ctx: Dict[str, dict] = {}
    grouped: Dict[str, List[JobResult]] = {}
    for dep in job.needs:
        res = results[dep]
        ctx[dep] = {"result": SUCCESS if res.allowed_failure else res.status, "outputs": dict(res.outputs)}
        group = by_id[dep].group
        if group != dep:
            grouped.setdefault(group, []).append(res)
    for group, members in grouped.items():
        outputs: Dict[str, str] = {}
        for r in members:
            outputs.update(r.outputs)
        ctx[group] = {"result": _group_result(members), "outputs": outputs}
    return ctx


def dependency_status(job: Job, results: Mapping[str, JobResult]) -> str:
    """SUCCESS when every need passed, else the worst status among them."""
    statuses = []
    for dep in job.needs:
        r = results[dep]
        statuses.append(SUCCESS if r.passed or r.allowed_failure else r.status)
    for status in (FAILURE, CANCELLED, SKIPPED):
        if status in statuses:
            return status
    return SUCCESS


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class _Scheduler:
    """
    Runs jobs as their dependencies finish.

    Ready jobs are submitted to a thread pool; each completion unlocks its
    dependents, so independent branches of the graph never wait on each
    other the way strict stages would.
    """

    def __init__(
        self,
        jobs: List[Job],
        executor: JobExecutor,
        *,
        selected: Set[str],
        reasons: Dict[str, str],
        max_workers: int,
        fail_fast: bool,
        on_job_done,
    ):
        self.jobs = jobs
        self.by_id: Dict[str, Job] = {j.id: j for j in jobs}
        self.executor = executor
        self.console = executor.console
        self.selected = selected
        self.reasons = reasons
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.on_job_done = on_job_done

        self.adj, indeg = build_dag(jobs)
        topo_levels(self.adj, indeg)
        self.waiting: Dict[str, int] = dict(indeg)
        self.ready: List[str] = [j.id for j in jobs if indeg[j.id] == 0]
        self.results: Dict[str, JobResult] = {}
        self.running: Dict[Future, str] = {}
        self.running_per_group: Dict[str, int] = {}
        self.cancelled_groups: Set[str] = set()
        self.failed_groups: Set[str] = set()
        self.stopped = False

    def _finish(self, job_id: str, result: JobResult) -> None:
        self.results[job_id] = result
        self.on_job_done(self.by_id[job_id], result)
        for nxt in self.jobs:
            if nxt.id in self.adj[job_id]:
                self.waiting[nxt.id] -= 1
                if self.waiting[nxt.id] == 0:
                    self.ready.append(nxt.id)

    def _not_run(self, job: Job, status: str, reason: str) -> None:
        if status == SKIPPED:
            self.console.print_job_skipped(job.id, reason)
        else:
            self.console.print_job_finished(job.id, status)
        self._finish(job.id, JobResult(job_id=job.id, status=status, error=reason, matrix_values=dict(job.matrix_values)))

    def _at_limit(self, job: Job) -> bool:
        strategy = job.strategy
        if strategy is None or not strategy.max_parallel or job.template_id is None:
            return False
        return self.running_per_group.get(job.group, 0) >= strategy.max_parallel

    def _survives_stop(self, job: Job) -> bool:
        """
        Jobs that still run once global fail-fast has tripped.

        A status-function `if` asked to see the failure; variants of a
        matrix with `fail-fast: false` keep going while every failure so
        far came from their own group.
        """
        return uses_status_function(job.if_) or self._matrix_continues(job)

    def _matrix_continues(self, job: Job) -> bool:
        strategy = job.strategy
        if job.template_id is None or strategy is None or strategy.fail_fast:
            return False
        return self.failed_groups <= {job.group}

    def _schedule(self, pool: ThreadPoolExecutor) -> None:
        progressed = True
        while progressed:
            progressed = False
            for job_id in list(self.ready):
                job = self.by_id[job_id]

                if job_id not in self.selected:
                    self.ready.remove(job_id)
                    self._not_run(job, SKIPPED, self.reasons.get(job_id, "not selected"))
                    progressed = True
                    continue

                if job.group in self.cancelled_groups:
                    self.ready.remove(job_id)
                    self._not_run(job, CANCELLED, f"matrix fail-fast: a '{job.group}' variant failed")
                    progressed = True
                    continue

                dep_status = dependency_status(job, self.results)
                if dep_status != SUCCESS and not uses_status_function(job.if_):
                    self.ready.remove(job_id)
                    self._not_run(job, SKIPPED, f"dependency {dep_status}")
                    progressed = True
                    continue

                if self.stopped and not self._survives_stop(job):
                    self.ready.remove(job_id)
                    self._not_run(job, CANCELLED, "fail-fast: an earlier job failed")
                    progressed = True
                    continue

                if len(self.running) >= self.max_workers or self._at_limit(job):
                    continue

                if self.stopped and dep_status == SUCCESS and not self._matrix_continues(job):
                    # status-function job started after fail-fast tripped
                    dep_status = CANCELLED

                self.ready.remove(job_id)
                needs = needs_context(job, self.by_id, self.results)
                fut = pool.submit(self.executor.run, job, needs=needs, status=dep_status)
                self.running[fut] = job_id
                self.running_per_group[job.group] = self.running_per_group.get(job.group, 0) + 1
                progressed = True

    def _collect(self, fut: Future) -> None:
        job_id = self.running.pop(fut)
        job = self.by_id[job_id]
        self.running_per_group[job.group] -= 1
        try:
            result = fut.result()
        except Exception as e:
            self.console.print_exception(e)
            result = JobResult(job_id=job_id, status=FAILURE, error=str(e), matrix_values=dict(job.matrix_values))

        if result.status == FAILURE and not result.allowed_failure:
            if job.template_id is not None and job.strategy is not None and job.strategy.fail_fast:
                self.cancelled_groups.add(job.group)
            if self.fail_fast:
                self.stopped = True
                self.failed_groups.add(job.group)
        self._finish(job_id, result)

    def run(self) -> Dict[str, JobResult]:
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                self._schedule(pool)
                if not self.running:
                    break
                # wait for one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(self.running), return_when=FIRST_COMPLETED)
                for fut in done:
                    self._collect(fut)

        # anything left was blocked by a dependency that never resolved
        for job in self.jobs:
            if job.id not in self.results:
                self.results[job.id] = JobResult(job_id=job.id, status=SKIPPED, error="not reached")
        return {j.id: self.results[j.id] for j in self.jobs}


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_workflow(
    workflow: Workflow,
    *,
    event: Optional[Event] = None,
    workspace: Union[str, Path] = ".",
    secrets: Union[SecretStore, Mapping[str, str], None] = None,
    cache_root: Union[str, Path, None] = DEFAULT_CACHE_DIR,
    artifact_root: Union[str, Path] = DEFAULT_ARTIFACT_DIR,
    max_workers: Optional[int] = None,
    fail_fast: bool = True,
    use_git_diff: bool = False,
    compare_ref: str = "origin/main",
    dry_run: bool = False,
    only: Optional[List[str]] = None,
    console: Optional[Console] = None,
    notifier: Optional[Notifier] = None,
    run_id: Optional[str] = None,
) -> RunResult:
    """
    Run a workflow end to end.

    Relative cache/artifact roots are resolved against the workspace.
    Pass `cache_root=None` to run without the job cache.

    Raises:
        WorkflowError: the job graph is invalid (cycle, missing needs,
            matrix expansion problems) or `only` names an unknown job
    """
    start = time.monotonic()
    console = console or get_console()
    ws = Path(workspace).resolve()
    event = event or Event()
    run_id = run_id or new_run_id()

    store = secrets if isinstance(secrets, SecretStore) else SecretStore(secrets or {})
    for name in store.names():
        console.masker.add(store.get(name))

    if not matches(workflow, event):
        console.print_info(f"Workflow '{workflow.name}' is not triggered by {event.name} event; skipping")
        return RunResult(workflow=workflow.name, status=SKIPPED, run_id=run_id, duration=time.monotonic() - start)

    jobs = restrict_to(expanded_jobs(workflow), only)

    changed = event.changed_files
    if use_git_diff and changed is None:
        try:
            _head, changed = git.changed_files_since(compare_ref, cwd=ws)
        except (OSError, git.GitError) as e:
            console.print_warning(f"git diff unavailable, running every job: {e}")
            changed = None
    selected, reasons = select_jobs(jobs, use_git_diff=use_git_diff, changed_files=changed)

    if dry_run:
        adj, indeg = build_dag(jobs)
        results: Dict[str, JobResult] = {}
        for idx, level in enumerate(topo_levels(adj, indeg), start=1):
            console.print_stage(idx, level)
            for job_id in level:
                if job_id in selected:
                    console.print_plan_job(job_id, reasons[job_id])
                else:
                    console.print_plan_job_skipped(job_id, reasons[job_id])
                results[job_id] = JobResult(job_id=job_id, status=SKIPPED, error="dry run")
        return RunResult(workflow=workflow.name, status=SKIPPED, jobs=results, run_id=run_id, duration=time.monotonic() - start)

    cache_store = None
    if cache_root is not None:
        cache_path = Path(cache_root)
        cache_store = CacheStore(cache_path if cache_path.is_absolute() else ws / cache_path)
    artifact_path = Path(artifact_root)
    artifacts = ArtifactStore(artifact_path if artifact_path.is_absolute() else ws / artifact_path, run_id)

    ctx = RunContext(
        workflow=workflow,
        run_id=run_id,
        workspace=ws,
        event=event,
        secrets=store,
        artifacts=artifacts,
        console=console,
        cache=cache_store,
    )
    notifier = notifier or Notifier(console=console)

    def on_job_done(job: Job, result: JobResult) -> None:
        if not job.notifications or result.status == SKIPPED:
            return
        notifier.dispatch(
            NotifyEvent(workflow=workflow.name, job=job.id, status=result.status, duration=result.duration, run_id=run_id),
            job.notifications,
            {"secrets": store.for_job(job.secrets), "env": dict(workflow.env), "matrix": dict(job.matrix_values)},
        )

    scheduler = _Scheduler(
        jobs,
        JobExecutor(ctx),
        selected=selected,
        reasons=reasons,
        max_workers=max_workers or default_workers(),
        fail_fast=fail_fast,
        on_job_done=on_job_done,
    )
    job_results = scheduler.run()

    failed = any(r.status == FAILURE and not r.allowed_failure for r in job_results.values())
    result = RunResult(
        workflow=workflow.name,
        status=FAILURE if failed else SUCCESS,
        jobs=job_results,
        duration=time.monotonic() - start,
        run_id=run_id,
    )

    if workflow.notifications:
        declared: List[str] = sorted({s for j in workflow.jobs for s in j.secrets})
        notifier.dispatch(
            NotifyEvent(workflow=workflow.name, job=None, status=result.status, duration=result.duration, run_id=run_id),
            workflow.notifications,
            {"secrets": store.for_job(declared), "env": dict(workflow.env)},
        )
    return result
