# actions.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .artifacts import ArtifactStore
from .errors import ArtifactError, ExecutorError
from .git_facts import git
from .loader import StepSchema, step_from_schema
from .model import Step
from .ui.console import Console

# ---------------------------------------------------------------------
# Reusable actions (`uses:`)
# ---------------------------------------------------------------------
#   uses: checkout                 built-in, run in-process
#   uses: actions/upload-artifact@v4
#   uses: ./.flowci/actions/setup  composite action (action.yml with steps)
#
# Version suffixes (@v4) and the `actions/` / `flowci/` owner prefix are
# accepted so workflow files written for hosted CI mostly run unchanged.
# ---------------------------------------------------------------------

ACTION_FILES = ("action.yml", "action.yaml")


@dataclass
class ActionCall:
    """Everything a built-in action gets to work with."""
    job_id: str
    step: str
    with_: Dict[str, str]
    workspace: Path
    artifacts: ArtifactStore
    console: Console


BuiltinAction = Callable[[ActionCall], Dict[str, str]]


def _split_paths(value: str) -> List[str]:
    parts: List[str] = []
    for line in value.splitlines():
        parts.extend(p.strip() for p in line.split(","))
    return [p for p in parts if p]


def _checkout(call: ActionCall) -> Dict[str, str]:
    ref = call.with_.get("ref", "").strip()
    if not ref:
        call.console.print_step_output(call.job_id, "workspace already checked out")
        return {}
    try:
        git.checkout(ref, cwd=call.workspace)
        sha = git.head_sha(cwd=call.workspace)
    except (git.GitError, FileNotFoundError) as e:
        raise ExecutorError(kind="checkout_failed", job=call.job_id, step=call.step, message=str(e)) from e
    call.console.print_step_output(call.job_id, f"checked out {ref} ({sha[:12]})")
    return {"ref": ref, "sha": sha}


def _upload_artifact(call: ActionCall) -> Dict[str, str]:
    name = call.with_.get("name") or "artifact"
    paths = _split_paths(call.with_.get("path", ""))
    if not paths:
        raise ExecutorError(kind="bad_input", job=call.job_id, step=call.step, message="upload-artifact needs 'path'")
    try:
        stored = call.artifacts.upload(name, paths, call.workspace)
    except ArtifactError as e:
        if call.with_.get("if-no-files-found", "error") == "ignore":
            call.console.print_step_output(call.job_id, f"no files uploaded: {e}")
            return {"files": "0"}
        raise
    call.console.print_step_output(call.job_id, f"uploaded {len(stored)} file(s) to artifact '{name}'")
    return {"files": str(len(stored))}


def _download_artifact(call: ActionCall) -> Dict[str, str]:
    name = call.with_.get("name") or "artifact"
    dest = (call.workspace / call.with_.get("path", ".")).resolve()
    restored = call.artifacts.download(name, dest)
    call.console.print_step_output(call.job_id, f"downloaded {len(restored)} file(s) from artifact '{name}'")
    return {"download-path": str(dest)}


def _echo(call: ActionCall) -> Dict[str, str]:
    message = call.with_.get("message", "")
    for line in message.splitlines() or [""]:
        call.console.print_step_output(call.job_id, line)
    return {"message": message}


BUILTIN_ACTIONS: Dict[str, BuiltinAction] = {
    "checkout": _checkout,
    "upload-artifact": _upload_artifact,
    "download-artifact": _download_artifact,
    "echo": _echo,
}


# ---------------------------------------------------------------------
# Composite actions
# ---------------------------------------------------------------------

class ActionInputSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = ""
    required: bool = False
    default: Optional[str] = None

    @field_validator("default", mode="before")
    @classmethod
    def default_to_str(cls, v):
        if v is None:
            return None
        if isinstance(v, bool):
            return "true" if v else "false"
        return str(v)


class ActionOutputSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = ""
    value: str


class ActionRunsSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    using: str = "composite"
    steps: List[StepSchema] = Field(min_length=1)

    @field_validator("using")
    @classmethod
    def composite_only(cls, v: str) -> str:
        if v != "composite":
            raise ValueError(f"only composite actions are supported, got using: {v!r}")
        return v


class ActionSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""
    inputs: Dict[str, ActionInputSchema] = Field(default_factory=dict)
    outputs: Dict[str, ActionOutputSchema] = Field(default_factory=dict)
    runs: ActionRunsSchema


@dataclass
class CompositeAction:
    name: str
    path: Path
    steps: List[Step]
    inputs: Dict[str, ActionInputSchema] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)

    def resolve_inputs(self, with_: Dict[str, str], *, job: str, step: str) -> Dict[str, str]:
        unknown = sorted(set(with_) - set(self.inputs))
        if unknown:
            raise ExecutorError(
                kind="bad_input",
                job=job,
                step=step,
                message=f"action '{self.name}' has no input(s) {unknown}",
            )
        values: Dict[str, str] = {}
        for name, spec in self.inputs.items():
            if name in with_:
                values[name] = with_[name]
            elif spec.default is not None:
                values[name] = spec.default
            elif spec.required:
                raise ExecutorError(
                    kind="bad_input",
                    job=job,
                    step=step,
                    message=f"action '{self.name}' requires input '{name}'",
                )
            else:
                values[name] = ""
        return values


def load_composite(action_dir: Path) -> CompositeAction:
    for fname in ACTION_FILES:
        path = action_dir / fname
        if path.exists():
            break
    else:
        raise FileNotFoundError(f"no action.yml in {action_dir}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        schema = ActionSchema.model_validate(data)
    except (yaml.YAMLError, ValidationError) as e:
        raise ValueError(f"invalid action {path}: {e}") from e

    return CompositeAction(
        name=schema.name,
        path=path,
        steps=[step_from_schema(s) for s in schema.runs.steps],
        inputs=dict(schema.inputs),
        outputs={k: o.value for k, o in schema.outputs.items()},
    )


# ---------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------

def normalize_name(uses: str) -> str:
    """'actions/upload-artifact@v4' -> 'upload-artifact'"""
    name = uses.split("@", 1)[0].strip()
    for prefix in ("actions/", "flowci/"):
        if name.startswith(prefix):
            name = name[len(prefix):]
    return name


def resolve_action(uses: str, workspace: Path, *, job: str, step: str) -> Union[BuiltinAction, CompositeAction]:
    if uses.startswith("./") or uses.startswith("../"):
        action_dir = (workspace / uses).resolve()
        try:
            return load_composite(action_dir)
        except (FileNotFoundError, ValueError) as e:
            raise ExecutorError(kind="action_invalid", job=job, step=step, message=str(e)) from e

    name = normalize_name(uses)
    fn = BUILTIN_ACTIONS.get(name)
    if fn is None:
        raise ExecutorError(
            kind="action_unknown",
            job=job,
            step=step,
            message=f"unknown action {uses!r}",
            details={"available": ", ".join(sorted(BUILTIN_ACTIONS))},
        )
    return fn
