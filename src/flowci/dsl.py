# src/flowci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .loader import _parse_triggers
from .model import CacheSpec, Job, Notification, Step, Strategy, Workflow

NOTIFICATION_TYPES = ("console", "webhook", "slack")


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    if_: str | None = None,
    shell: str | None = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
        working_directory=cwd,
        shell=shell,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(
    action: str,
    name: str | None = None,
    *,
    id: str | None = None,
    if_: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    with_: Optional[Mapping[str, Any]] = None,
    **inputs: Any,
) -> Step:
    """
    Create an action step.

        uses("checkout")
        uses("./.flowci/actions/setup", python="3.12")
        uses("upload-artifact", with_={"name": "dist", "path": "dist/"})

    `name` is the step name, so action inputs called `name` (or with dashes)
    go through `with_`.
    """
    values = {k: _str(v) for k, v in (with_ or {}).items()}
    values.update({k: _str(v) for k, v in inputs.items()})
    return Step(
        name=name or action,
        uses=action,
        id=id,
        with_=values,
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
    )


def _str(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


# ---------------------------------------------------------------------
# Matrix / notifications
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    fail_fast: bool = True,
    max_parallel: Optional[int] = None,
    **axes: Iterable[Any],
) -> Strategy:
    """
    matrix(python=["3.11", "3.12"], os=["ubuntu-latest"], exclude=[...])
    """
    return Strategy(
        matrix={k: list(v) for k, v in axes.items()},
        include=list(include or []),
        exclude=list(exclude or []),
        fail_fast=fail_fast,
        max_parallel=max_parallel,
    )


def notify(
    type: str,
    url: str | None = None,
    *,
    on: Union[str, Sequence[str]] = ("failure",),
    channel: str | None = None,
    template: str | None = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type {type!r}; expected one of {list(NOTIFICATION_TYPES)}")
    if type != "console" and not url:
        raise ValueError(f"{type} notification needs a url")
    on_list = [on] if isinstance(on, str) else list(on)
    unknown = set(on_list) - {"success", "failure", "always"}
    if unknown:
        raise ValueError(f"unknown notification outcome(s): {sorted(unknown)}")
    return Notification(type=type, url=url, on=on_list, channel=channel, template=template)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def _cache_spec(
    cache: Union[CacheSpec, Sequence[str], None],
    *,
    cache_dirs: Optional[List[str]],
    inputs: Optional[List[str]],
    cache_key: str | None,
    cache_enabled: bool,
    cache_skip_on_hit: bool,
    cache_keep: int,
) -> Optional[CacheSpec]:
    if isinstance(cache, CacheSpec):
        return cache
    paths = list(cache or []) + list(cache_dirs or [])
    if not paths:
        return None
    return CacheSpec(
        paths=paths,
        key=cache_key,
        inputs=list(inputs or []),
        skip_on_hit=cache_skip_on_hit,
        keep=cache_keep,
        enabled=cache_enabled,
    )


def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: str | None = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    secrets: Optional[List[str]] = None,
    matrix: Optional[Strategy] = None,
    runs_on: str = "local",
    container: str | None = None,
    outputs: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    timeout_minutes: float | None = None,
    continue_on_error: bool = False,
    paths: Optional[List[str]] = None,
    notifications: Optional[List[Notification]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing one
    # cache knobs
    cache: Union[CacheSpec, Sequence[str], None] = None,
    cache_dirs: Optional[List[str]] = None,
    inputs: Optional[List[str]] = None,
    cache_key: str | None = None,
    cache_enabled: bool = True,
    cache_skip_on_hit: bool = False,
    cache_keep: int = 3,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.working_directory is not None else replace(s, working_directory=cwd) for s in steps_final]

    return Job(
        id=id,
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=list(secrets or []),
        strategy=matrix,
        notifications=list(notifications or []),
        cache=_cache_spec(
            cache,
            cache_dirs=cache_dirs,
            inputs=inputs,
            cache_key=cache_key,
            cache_enabled=cache_enabled,
            cache_skip_on_hit=cache_skip_on_hit,
            cache_keep=cache_keep,
        ),
        outputs=dict(outputs or {}),
        if_=if_,
        container=container,
        timeout_minutes=timeout_minutes,
        continue_on_error=continue_on_error,
        paths=list(paths) if paths is not None else None,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: Optional[str] = None
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._inputs: list[str] = []
        self._env: dict[str, str] = {}
        self._secrets: list[str] = []
        self._paths: Optional[list[str]] = None
        self._runs_on = "local"
        self._container: Optional[str] = None
        self._strategy: Optional[Strategy] = None
        self._notifications: list[Notification] = []
        self._outputs: dict[str, str] = {}

        # cache knobs (optional)
        self._cache_dirs: Optional[list[str]] = None
        self._cache_key: Optional[str] = None
        self._cache_enabled: bool = True
        self._cache_skip_on_hit: bool = False
        self._cache_keep: int = 3

    def named(self, name: str):
        self._name = name
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, action: str, name: str | None = None, **inputs):
        self._steps.append(uses(action, name, **inputs))
        return self

    def with_inputs(self, *paths: str):
        self._inputs.extend(paths)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_secrets(self, *names: str):
        self._secrets.extend(names)
        return self

    def with_paths(self, *patterns: str):
        self._paths = list(patterns)
        return self

    def runs_on(self, runner: str, *, container: str | None = None):
        self._runs_on = runner
        self._container = container
        return self

    def with_matrix(self, strategy: Strategy):
        self._strategy = strategy
        return self

    def notify(self, notification: Notification):
        self._notifications.append(notification)
        return self

    def output(self, name: str, expr: str):
        self._outputs[name] = expr
        return self

    # cache sugar (optional)
    def cache_dirs(self, *dirs: str):
        self._cache_dirs = list(dirs)
        return self

    def cache_behavior(self, *, enabled: bool = True, skip_on_hit: bool = False, keep: int = 3, key: str | None = None):
        self._cache_enabled = enabled
        self._cache_skip_on_hit = skip_on_hit
        self._cache_keep = keep
        self._cache_key = key
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            name=self._name,
            needs=self._needs,
            env=self._env,
            secrets=self._secrets,
            matrix=self._strategy,
            runs_on=self._runs_on,
            container=self._container,
            outputs=self._outputs,
            paths=self._paths,
            notifications=self._notifications,
            cache_dirs=self._cache_dirs,
            inputs=self._inputs,
            cache_key=self._cache_key,
            cache_enabled=self._cache_enabled,
            cache_skip_on_hit=self._cache_skip_on_hit,
            cache_keep=self._cache_keep,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: Union[str, Job],
    *jobs: Job,
    on: Any = None,
    env: Optional[Dict[str, Any]] = None,
    notifications: Optional[List[Notification]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(...).

    Users can write:
        from flowci import wf, job, sh

        def workflow():
            return wf(
                "ci",
                job(...),
                job(...),
                on={"push": {"branches": ["main"]}},
            )

    The name may be left out: wf(job(...), job(...)).
    """
    if isinstance(name, Job):
        jobs = (name,) + jobs
        name = "workflow"
    if not jobs:
        raise ValueError(f"workflow {name!r} must have at least one job")
    return Workflow(
        name=name,
        jobs=list(jobs),
        triggers=_parse_triggers(on),
        env={k: str(v) for k, v in (env or {}).items()},
        notifications=list(notifications or []),
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
