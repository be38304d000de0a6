# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any, Dict, List

from .errors import WorkflowError
from .expressions import partial_interpolate, to_str
from .model import CacheSpec, Job, Step, Strategy

MAX_COMBINATIONS = 256

_SLUG_RE = re.compile(r"[^A-Za-z0-9_.]+")


def _agrees(combo: Dict[str, Any], entry: Dict[str, Any], keys) -> bool:
    return all(k in combo and to_str(combo[k]) == to_str(entry[k]) for k in keys)


def _too_many() -> WorkflowError:
    return WorkflowError(f"matrix expands to more than {MAX_COMBINATIONS} combinations")


def expand_matrix(strategy: Strategy | None) -> List[Dict[str, Any]]:
    """
    Expand a matrix strategy into its list of combinations.

      1. cartesian product of the axes, in declaration order
      2. drop combinations matched by any `exclude` entry
      3. apply `include` entries: extend every combination that agrees with
         the entry on the original axes it names, or append the entry as a
         new combination when it extends none
    """
    if strategy is None:
        return [{}]

    axes = list(strategy.matrix.items())
    for key, values in axes:
        if not isinstance(values, list) or not values:
            raise WorkflowError(f"matrix axis '{key}' must be a non-empty list")

    keys = [k for k, _ in axes]
    combos: List[Dict[str, Any]] = []
    if axes:
        # walked lazily so an oversized product fails before it is built
        for vals in itertools.product(*[v for _, v in axes]):
            combo = dict(zip(keys, vals))
            if any(_agrees(combo, entry, entry.keys()) for entry in strategy.exclude):
                continue
            combos.append(combo)
            if len(combos) > MAX_COMBINATIONS:
                raise _too_many()
    elif not strategy.include:
        combos = [{}]

    original = set(keys)
    base = list(combos)  # includes only extend product combinations
    for entry in strategy.include:
        matched_keys = [k for k in entry if k in original]
        extra = {k: v for k, v in entry.items() if k not in original}
        extended = False
        if matched_keys or extra:
            for c in base:
                if not _agrees(c, entry, matched_keys):
                    continue
                # include never overwrites an original axis value
                c.update(extra)
                extended = True
        if not extended:
            combos.append(dict(entry))

    if not combos:
        raise WorkflowError("matrix expands to zero combinations")
    if len(combos) > MAX_COMBINATIONS:
        raise _too_many()
    return combos


def _slug(value: Any) -> str:
    s = _SLUG_RE.sub("-", to_str(value)).strip("-")
    return s or "x"


def variant_id(job_id: str, values: Dict[str, Any]) -> str:
    return "-".join([job_id] + [_slug(v) for v in values.values()])


def _sub(text: Any, ctx: Dict[str, Any]) -> Any:
    if text is None:
        return None
    return partial_interpolate(text, ctx, ("matrix",))


def _sub_map(values: Dict[str, str], ctx: Dict[str, Any]) -> Dict[str, str]:
    return {k: _sub(v, ctx) for k, v in values.items()}


def _sub_step(step: Step, ctx: Dict[str, Any]) -> Step:
    return replace(
        step,
        name=_sub(step.name, ctx),
        run=_sub(step.run, ctx),
        uses=_sub(step.uses, ctx),
        with_=_sub_map(step.with_, ctx),
        env=_sub_map(step.env, ctx),
        working_directory=_sub(step.working_directory, ctx),
        if_=_sub(step.if_, ctx),
    )


def expand_job(job: Job) -> List[Job]:
    if job.strategy is None or (not job.strategy.matrix and not job.strategy.include):
        return [job]

    out: List[Job] = []
    for values in expand_matrix(job.strategy):
        ctx = {"matrix": values}
        cache = job.cache
        if cache is not None:
            cache = replace(cache, key=_sub(cache.key, ctx), paths=[_sub(p, ctx) for p in cache.paths])
        axis_values = {k: v for k, v in values.items() if k in job.strategy.matrix} or values
        label = ", ".join(to_str(v) for v in axis_values.values())
        name = _sub(job.name, ctx) if job.name else job.id
        if job.name is None or "${{" not in job.name:
            name = f"{name} ({label})"
        out.append(
            replace(
                job,
                id=variant_id(job.id, axis_values),
                name=name,
                runs_on=_sub(job.runs_on, ctx),
                container=_sub(job.container, ctx),
                env=_sub_map(job.env, ctx),
                steps=[_sub_step(s, ctx) for s in job.steps],
                cache=cache,
                outputs=_sub_map(job.outputs, ctx),
                if_=_sub(job.if_, ctx),
                needs=list(job.needs),
                matrix_values=dict(values),
                template_id=job.id,
            )
        )

    ids = [j.id for j in out]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise WorkflowError(f"matrix for job '{job.id}' produces duplicate job ids: {dupes}")
    return out


def expand_jobs(jobs: List[Job]) -> List[Job]:
    """Expand every matrix job into its variants; plain jobs pass through."""
    expanded: List[Job] = []
    for j in jobs:
        expanded.extend(expand_job(j))
    return expanded


def matrix_groups(jobs: List[Job]) -> Dict[str, List[str]]:
    """template id -> ids of its expanded variants"""
    groups: Dict[str, List[str]] = {}
    for j in jobs:
        groups.setdefault(j.group, []).append(j.id)
    return groups
