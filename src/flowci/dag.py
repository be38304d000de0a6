# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import replace
from typing import Dict, List, Set, Tuple

from .errors import WorkflowError
from .matrix import expand_jobs, matrix_groups
from .model import Job, Workflow


def resolve_needs(jobs: List[Job]) -> List[Job]:
    """
    Point `needs` at expanded job ids.

    A job that needs a matrix job waits for every variant of it. Needs that
    already name a concrete job id are kept as they are.
    """
    groups = matrix_groups(jobs)
    ids = {j.id for j in jobs}
    out: List[Job] = []
    for j in jobs:
        needs: List[str] = []
        for n in j.needs:
            targets = [n] if n in ids else groups.get(n, [n])
            for t in targets:
                if t not in needs:
                    needs.append(t)
        out.append(replace(j, needs=needs))
    return out


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: ids of jobs that must run BEFORE this job
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise WorkflowError(f"Duplicate job ids found: {dupes}")

    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in id_set}
    indeg: Dict[str, int] = {n: 0 for n in id_set}

    for job in jobs:
        for need in job.needs:
            if need not in id_set:
                raise WorkflowError(
                    f"Job '{job.id}' needs missing job '{need}'. Known jobs: {sorted(id_set)}"
                )
            # edge need -> job (need must run before job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise WorkflowError(f"Job dependencies form a cycle. Stuck jobs: {remaining}")

    return levels


def check_acyclic(jobs: List[Job]) -> None:
    adj, indeg = build_dag(jobs)
    topo_levels(adj, indeg)


def ancestors(jobs: List[Job], targets: List[str]) -> Set[str]:
    """`targets` plus every job they transitively need."""
    by_id = {j.id: j for j in jobs}
    groups = matrix_groups(jobs)
    seen: Set[str] = set()
    stack: List[str] = []
    for t in targets:
        if t in by_id:
            stack.append(t)
        elif t in groups:
            stack.extend(groups[t])
        else:
            raise WorkflowError(f"Unknown job '{t}'. Known jobs: {sorted(set(by_id) | set(groups))}")
    while stack:
        cur = stack.pop()
        if cur in seen:
            continue
        seen.add(cur)
        stack.extend(by_id[cur].needs)
    return seen


def expanded_jobs(workflow: Workflow) -> List[Job]:
    """Matrix-expanded jobs with needs pointing at concrete ids."""
    return resolve_needs(expand_jobs(workflow.jobs))


def plan(workflow: Workflow) -> List[List[str]]:
    """Stages of expanded job ids, in execution order."""
    adj, indeg = build_dag(expanded_jobs(workflow))
    return topo_levels(adj, indeg)
