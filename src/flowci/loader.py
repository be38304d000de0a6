"""
Workflow loader for flowci.

Loads workflow definitions from YAML files (validated with pydantic) or
from Python modules written with the flowci DSL, and turns them into the
runtime model.
"""

from __future__ import annotations

import re
import runpy
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import check_acyclic, expanded_jobs
from .errors import ExpressionError, WorkflowError
from .model import CacheSpec, Job, Notification, Step, Strategy, Trigger, Workflow

JOB_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
RUNS_ON_RE = re.compile(r"^(local|self-hosted|[A-Za-z0-9_.-]+-latest|docker://\S+)$")
NOTIFY_WHEN = ("success", "failure", "always")

WORKFLOW_FILENAMES = ("flowci.yml", "flowci.yaml")


def _scalar(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _str_map(v: Any) -> Any:
    if v is None:
        return {}
    if isinstance(v, dict):
        return {str(k): _scalar(val) for k, val in v.items()}
    return v


def _str_list(v: Any) -> Any:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


# ---------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------

class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSchema(_Schema):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    shell: Optional[str] = None
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    coerce_maps = field_validator("with_", "env", mode="before")(_str_map)

    @field_validator("run", mode="before")
    @classmethod
    def run_to_str(cls, v: Any) -> Any:
        return None if v is None else _scalar(v)

    @model_validator(mode="after")
    def run_xor_uses(self) -> "StepSchema":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.with_ and self.uses is None:
            raise ValueError("'with' is only valid on 'uses' steps")
        return self


class NotificationSchema(_Schema):
    type: Literal["console", "webhook", "slack"]
    url: Optional[str] = None
    on: List[str] = Field(default_factory=lambda: ["failure"])
    channel: Optional[str] = None
    template: Optional[str] = None

    on_as_list = field_validator("on", mode="before")(_str_list)

    @field_validator("on")
    @classmethod
    def known_outcomes(cls, v: List[str]) -> List[str]:
        bad = [x for x in v if x not in NOTIFY_WHEN]
        if bad:
            raise ValueError(f"unknown outcome(s) {bad}; expected any of {list(NOTIFY_WHEN)}")
        return v

    @model_validator(mode="after")
    def url_required(self) -> "NotificationSchema":
        if self.type in ("webhook", "slack") and not self.url:
            raise ValueError(f"{self.type} notification needs a 'url'")
        return self


class CacheSchema(_Schema):
    paths: List[str]
    key: Optional[str] = None
    inputs: List[str] = Field(default_factory=list)
    skip_on_hit: bool = Field(default=False, alias="skip-on-hit")
    keep: int = Field(default=3, ge=1)
    enabled: bool = True
    exclude: List[str] = Field(default_factory=list)

    coerce_lists = field_validator("paths", "inputs", "exclude", mode="before")(_str_list)


class StrategySchema(_Schema):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)

    @field_validator("matrix")
    @classmethod
    def axes_are_lists(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        for key, values in v.items():
            if key in ("include", "exclude"):
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError(f"matrix.{key} must be a list of mappings")
            elif not isinstance(values, list) or not values:
                raise ValueError(f"matrix axis '{key}' must be a non-empty list")
        return v


class JobSchema(_Schema):
    name: Optional[str] = None
    runs_on: str = Field(default="local", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    secrets: List[str] = Field(default_factory=list)
    strategy: Optional[StrategySchema] = None
    steps: List[StepSchema] = Field(min_length=1)
    notifications: List[NotificationSchema] = Field(default_factory=list)
    cache: Optional[CacheSchema] = None
    outputs: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    container: Optional[str] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    paths: Optional[List[str]] = None

    coerce_lists = field_validator("needs", "secrets", mode="before")(_str_list)
    coerce_maps = field_validator("env", "outputs", mode="before")(_str_map)

    @field_validator("container", mode="before")
    @classmethod
    def container_image(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return v.get("image")
        return v

class WorkflowSchema(_Schema):
    name: Optional[str] = None
    on: Any = None
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobSchema]
    notifications: List[NotificationSchema] = Field(default_factory=list)

    coerce_env = field_validator("env", mode="before")(_str_map)

    @field_validator("jobs")
    @classmethod
    def at_least_one_job(cls, v: Dict[str, JobSchema]) -> Dict[str, JobSchema]:
        if not v:
            raise ValueError("workflow must define at least one job")
        return v


# ---------------------------------------------------------------------
# Schema -> runtime model
# ---------------------------------------------------------------------

def _parse_triggers(on: Any) -> List[Trigger]:
    if on is None:
        return []
    if isinstance(on, str):
        return [Trigger(event=on)]
    if isinstance(on, list):
        if not all(isinstance(e, str) for e in on):
            raise ValueError("'on' list must contain event names")
        return [Trigger(event=e) for e in on]
    if isinstance(on, dict):
        triggers = []
        for event, filters in on.items():
            filters = filters or {}
            if not isinstance(filters, dict):
                raise ValueError(f"'on.{event}' must be a mapping of filters")
            unknown = set(filters) - {"branches", "branches-ignore", "paths", "tags", "inputs", "types"}
            if unknown:
                raise ValueError(f"unknown filter(s) for 'on.{event}': {sorted(unknown)}")
            triggers.append(
                Trigger(
                    event=str(event),
                    branches=[str(b) for b in _str_list(filters.get("branches"))],
                    branches_ignore=[str(b) for b in _str_list(filters.get("branches-ignore"))],
                    paths=[str(p) for p in _str_list(filters.get("paths"))],
                    tags=[str(t) for t in _str_list(filters.get("tags"))],
                )
            )
        return triggers
    raise ValueError(f"'on' must be a string, list or mapping, got {type(on).__name__}")


def _notification(n: NotificationSchema) -> Notification:
    return Notification(type=n.type, url=n.url, on=list(n.on), channel=n.channel, template=n.template)


def step_from_schema(s: StepSchema) -> Step:
    if s.name:
        name = s.name
    elif s.run is not None:
        name = s.run.strip().splitlines()[0] if s.run.strip() else "run"
    else:
        name = s.uses or "step"
    if_ = s.if_
    if isinstance(if_, bool):
        if_ = "true" if if_ else "false"
    return Step(
        name=name,
        run=s.run,
        uses=s.uses,
        id=s.id,
        with_=dict(s.with_),
        env=dict(s.env),
        if_=if_,
        working_directory=s.working_directory,
        shell=s.shell,
        continue_on_error=s.continue_on_error,
        timeout_minutes=s.timeout_minutes,
    )


def _strategy(s: StrategySchema) -> Strategy:
    axes = {k: v for k, v in s.matrix.items() if k not in ("include", "exclude")}
    return Strategy(
        matrix=axes,
        include=list(s.matrix.get("include", [])),
        exclude=list(s.matrix.get("exclude", [])),
        fail_fast=s.fail_fast,
        max_parallel=s.max_parallel,
    )


def _job(job_id: str, js: JobSchema) -> Job:
    cache = None
    if js.cache is not None:
        c = js.cache
        cache = CacheSpec(
            paths=list(c.paths),
            key=c.key,
            inputs=list(c.inputs),
            skip_on_hit=c.skip_on_hit,
            keep=c.keep,
            enabled=c.enabled,
            exclude=list(c.exclude),
        )
    if_ = js.if_
    if isinstance(if_, bool):
        if_ = "true" if if_ else "false"
    return Job(
        id=job_id,
        name=js.name,
        steps=[step_from_schema(s) for s in js.steps],
        runs_on=js.runs_on,
        needs=list(js.needs),
        env=dict(js.env),
        secrets=list(js.secrets),
        strategy=_strategy(js.strategy) if js.strategy else None,
        notifications=[_notification(n) for n in js.notifications],
        cache=cache,
        outputs=dict(js.outputs),
        if_=if_,
        container=js.container,
        timeout_minutes=js.timeout_minutes,
        continue_on_error=js.continue_on_error,
        paths=js.paths,
    )


def _format_validation_error(e: ValidationError) -> List[str]:
    problems = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        problems.append(f"{loc}: {msg}" if loc else msg)
    return problems


def validate_workflow(workflow: Workflow) -> List[str]:
    """Semantic checks that the schema cannot express. Returns problems (empty if valid)."""
    problems: List[str] = []
    if not workflow.jobs:
        problems.append("workflow must define at least one job")

    ids = {j.id for j in workflow.jobs}
    for j in workflow.jobs:
        if not JOB_ID_RE.match(j.id):
            problems.append(f"jobs.{j.id}: job id must start with a letter or '_' and contain only letters, digits, '-' and '_'")
        if not j.steps:
            problems.append(f"jobs.{j.id}: job must have at least one step")
        seen_steps: set[str] = set()
        for idx, s in enumerate(j.steps):
            if (s.run is None) == (s.uses is None):
                problems.append(f"jobs.{j.id}.steps.{idx}: a step needs exactly one of 'run' or 'uses'")
            if s.id is None:
                continue
            if s.id in seen_steps:
                problems.append(f"jobs.{j.id}.steps.{idx}: duplicate step id '{s.id}'")
            seen_steps.add(s.id)
        for n in j.needs:
            if n == j.id:
                problems.append(f"jobs.{j.id}.needs: job cannot need itself")
            elif n not in ids:
                problems.append(f"jobs.{j.id}.needs: unknown job '{n}'")

    if not problems:
        try:
            check_acyclic(workflow.jobs)
            expanded = expanded_jobs(workflow)
        except WorkflowError as e:
            problems.append(e.message)
        except ExpressionError as e:
            problems.append(f"matrix: {e}")
        else:
            # matrix references in runs-on are only known after expansion
            for j in expanded:
                if not RUNS_ON_RE.match(j.runs_on):
                    problems.append(
                        f"jobs.{j.id}: unsupported runs-on {j.runs_on!r}; "
                        "use 'local', 'self-hosted', '<os>-latest' or 'docker://<image>'"
                    )
    return problems


def workflow_from_dict(data: Any, *, source: Optional[str] = None) -> Workflow:
    if not isinstance(data, dict):
        raise WorkflowError("workflow file must contain a mapping", source=source)

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data = dict(data)
        data["on"] = data.pop(True)

    try:
        schema = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        raise WorkflowError("invalid workflow", source=source, problems=_format_validation_error(e)) from e

    try:
        triggers = _parse_triggers(schema.on)
    except ValueError as e:
        raise WorkflowError("invalid workflow", source=source, problems=[f"on: {e}"]) from e

    default_name = Path(source).stem if source else "workflow"
    workflow = Workflow(
        name=schema.name or default_name,
        jobs=[_job(job_id, js) for job_id, js in schema.jobs.items()],
        triggers=triggers,
        env=dict(schema.env),
        notifications=[_notification(n) for n in schema.notifications],
        source=source,
    )

    problems = validate_workflow(workflow)
    if problems:
        raise WorkflowError("invalid workflow", source=source, problems=problems)
    return workflow


def load_workflow_string(content: str, source: Optional[str] = None) -> Workflow:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise WorkflowError(f"invalid YAML: {e}", source=source) from e
    return workflow_from_dict(data, source=source)


# ---------------------------------------------------------------------
# Python workflows
# ---------------------------------------------------------------------

def _load_python_workflow(wf_path: Path) -> Workflow:
    """
    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]
    """
    module_name = f"flowci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowError(
                    "workflow() is being called with arguments (name collision with the DSL helper). "
                    "Import the helper as `from flowci import wf` and define `def workflow(): return wf(...)`",
                    source=str(wf_path),
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        result = Workflow(name=wf_path.stem, jobs=result)
    if not isinstance(result, Workflow):
        raise WorkflowError(
            "Python workflow must define workflow() -> Workflow | List[Job], WORKFLOW or JOBS",
            source=str(wf_path),
        )

    if result.source is None:
        result.source = str(wf_path)
    problems = validate_workflow(result)
    if problems:
        raise WorkflowError("invalid workflow", source=str(wf_path), problems=problems)
    return result


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a .yml/.yaml or .py file.

    Raises:
        WorkflowError: file missing, unreadable or invalid
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowError("workflow file not found", source=str(wf_path))

    if wf_path.suffix in (".yml", ".yaml"):
        return load_workflow_string(wf_path.read_text(encoding="utf-8"), source=str(wf_path))
    if wf_path.suffix == ".py":
        return _load_python_workflow(wf_path)
    raise WorkflowError(f"workflow must be a .yml, .yaml or .py file, got: {wf_path.name}", source=str(wf_path))


def find_workflow_files(directory: str | Path = ".") -> List[Path]:
    """Workflow files in `directory`: flowci.yml, .flowci/*.yml, *_workflow.py."""
    root = Path(directory)
    found: List[Path] = []
    for name in WORKFLOW_FILENAMES:
        p = root / name
        if p.exists():
            found.append(p)
    wf_dir = root / ".flowci"
    if wf_dir.is_dir():
        found.extend(sorted(wf_dir.glob("*.yml")) + sorted(wf_dir.glob("*.yaml")))
    found.extend(sorted(root.glob("*_workflow.py")))
    return found
