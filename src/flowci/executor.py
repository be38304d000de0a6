# executor.py
from __future__ import annotations

import os
import platform
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .actions import ActionCall, CompositeAction, resolve_action
from .artifacts import ArtifactStore
from .cache import CacheStore
from .errors import ArtifactError, ExecutorError, ExpressionError, StepFailure
from .expressions import evaluate_condition, interpolate, interpolate_mapping
from .model import (
    CACHED,
    FAILURE,
    SKIPPED,
    SUCCESS,
    Event,
    Job,
    JobResult,
    Step,
    StepResult,
    Workflow,
)
from .secrets import SecretStore, host_env, layer_env, runner_env
from .step_workflows import DockerBackend, LocalBackend
from .step_workflows.docker import image_for
from .ui.console import Console

# Workflow commands understood on step output
ADD_MASK = "::add-mask::"
SET_OUTPUT = "::set-output name="


@dataclass
class RunContext:
    """State shared by every job of one run."""
    workflow: Workflow
    run_id: str
    workspace: Path
    event: Event
    secrets: SecretStore
    artifacts: ArtifactStore
    console: Console
    cache: Optional[CacheStore] = None
    host_env: Dict[str, str] = field(default_factory=host_env)


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse a FLOWCI_OUTPUT file.

        name=value
        name<<DELIM
        multi-line value
        DELIM
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            buf: List[str] = []
            while i < len(lines) and lines[i] != delim:
                buf.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[name.strip()] = "\n".join(buf)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs


class JobExecutor:
    """
    Runs one job: cache restore, steps, cache save, outputs.

    Step and job failures end up in the returned JobResult; only bugs
    escape as exceptions.
    """

    def __init__(self, run: RunContext):
        self.run_ctx = run
        self.console = run.console

    # ------------------------------------------------------------------
    # Context / environment
    # ------------------------------------------------------------------

    def _base_context(self, job: Job, needs: Dict[str, Any], status: str, job_secrets: Dict[str, str], tmp: Path) -> Dict[str, Any]:
        run = self.run_ctx
        return {
            "env": {},
            "secrets": job_secrets,
            "matrix": dict(job.matrix_values),
            "needs": needs,
            "steps": {},
            "job": {"status": status, "id": job.id},
            "workflow": {"name": run.workflow.name},
            "event": run.event.as_context(),
            "runner": {
                "os": platform.system().lower(),
                "name": "flowci",
                "temp": str(tmp),
                "workspace": str(run.workspace),
            },
            "inputs": {},
        }

    def _render(self, job: Job, value: Any, ctx: Dict[str, Any]) -> str:
        missing: List[str] = []
        out = interpolate(value, ctx, missing)
        self._warn_missing(job, missing)
        return out

    def _render_map(self, job: Job, values: Dict[str, str], ctx: Dict[str, Any]) -> Dict[str, str]:
        missing: List[str] = []
        out = interpolate_mapping(values, ctx, missing)
        self._warn_missing(job, missing)
        return out

    def _warn_missing(self, job: Job, missing: List[str]) -> None:
        for ref in missing:
            if ref.startswith("secrets."):
                name = ref.split(".", 1)[1]
                if name not in job.secrets:
                    self.console.print_warning(
                        f"[{job.id}] secret '{name}' is not declared in the job's `secrets:` list; it renders empty"
                    )
                else:
                    self.console.print_warning(f"[{job.id}] secret '{name}' has no value")

    def _layer(self, job: Job, ctx: Dict[str, Any], base: Dict[str, str], *scopes: Dict[str, str]) -> Dict[str, str]:
        def render(value: str, env_so_far: Dict[str, str]) -> str:
            return self._render(job, value, {**ctx, "env": env_so_far})

        return layer_env(base, *scopes, render=render)

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(self, job: Job, *, needs: Optional[Dict[str, Any]] = None, status: str = SUCCESS) -> JobResult:
        """
        Args:
            job: expanded job to run
            needs: `needs` context ({job: {"result", "outputs"}}) of its dependencies
            status: SUCCESS, or FAILURE/CANCELLED when a dependency did not pass
                    (only jobs whose `if` asks for it run in that case)
        """
        run = self.run_ctx
        console = self.console
        start = time.monotonic()
        needs = needs or {}

        for name in run.secrets.missing(job.secrets):
            console.print_warning(f"[{job.id}] declared secret '{name}' has no value")
        job_secrets = run.secrets.for_job(job.secrets)

        tmp = run.workspace / ".flowci" / "tmp" / run.run_id / job.id
        ctx = self._base_context(job, needs, status, job_secrets, tmp)

        def finish(result_status: str, steps: List[StepResult], *, outputs=None, error=None) -> JobResult:
            result = JobResult(
                job_id=job.id,
                status=result_status,
                steps=steps,
                outputs=outputs or {},
                duration=time.monotonic() - start,
                error=error,
                matrix_values=dict(job.matrix_values),
                allowed_failure=job.continue_on_error and result_status == FAILURE,
            )
            console.print_job_finished(job.id, result_status, result.duration)
            return result

        try:
            should_run = evaluate_condition(job.if_, ctx)
        except ExpressionError as e:
            console.print_failure(job.id, str(e), is_job=True)
            return finish(FAILURE, [], error=f"invalid if: {e}")
        if not should_run:
            reason = "condition false" if status == SUCCESS else f"dependency {status}"
            console.print_job_skipped(job.id, reason)
            return finish(SKIPPED, [], error=reason)

        console.print_job_start(job.display_name)

        base = dict(run.host_env)
        base.setdefault("PATH", os.defpath)
        base.update(
            runner_env(
                workflow=run.workflow.name,
                job=job.id,
                run_id=run.run_id,
                workspace=run.workspace,
                event_name=run.event.name,
                sha=run.event.sha,
                ref=run.event.ref,
            )
        )
        try:
            job_env = self._layer(job, ctx, base, run.workflow.env, job.env)
            image = image_for(self._render(job, job.runs_on, ctx), self._render(job, job.container, ctx) or None)
        except ExpressionError as e:
            console.print_failure(job.id, str(e), is_job=True)
            return finish(FAILURE, [], error=str(e))

        backend = DockerBackend(image) if image else LocalBackend()
        if image:
            job_env["FLOWCI_WORKSPACE"] = backend.map_path(run.workspace, run.workspace)

        tmp.mkdir(parents=True, exist_ok=True)
        try:
            return self._run_job_body(job, ctx, job_env, backend, tmp, start, finish)
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def _run_job_body(self, job, ctx, job_env, backend, tmp, start, finish) -> JobResult:
        run = self.run_ctx
        console = self.console

        # ---- restore ----
        cache_key: Optional[str] = None
        use_cache = run.cache is not None and job.cache is not None and job.cache.enabled and bool(job.cache.paths)
        if use_cache:
            ctx["env"] = job_env
            cache_key = self._render(job, job.cache.key, ctx) if job.cache.key else None
            hit = run.cache.restore(job, workspace=run.workspace, key=cache_key)
            if hit.hit:
                console.print_cache_hit(job.id, hit.reason)
                if job.cache.skip_on_hit:
                    return finish(CACHED, [])
            else:
                console.print_cache_miss(job.id, hit.reason)

        # ---- steps ----
        deadline = start + job.timeout_minutes * 60 if job.timeout_minutes else None
        results: List[StepResult] = []
        job_status = SUCCESS
        for idx, step in enumerate(job.steps):
            ctx["job"]["status"] = job_status
            res = self._run_step(job, step, idx, ctx, job_env, backend, tmp, deadline)
            results.append(res)
            if res.id:
                ctx["steps"][res.id] = {
                    "outputs": res.outputs,
                    "outcome": res.status,
                    "conclusion": SUCCESS if step.continue_on_error and res.status == FAILURE else res.status,
                }
            if res.status == FAILURE and not step.continue_on_error:
                job_status = FAILURE
        ctx["job"]["status"] = job_status

        error = None
        if job_status == FAILURE:
            failed = next(r for r in results if r.status == FAILURE)
            error = failed.error
            console.print_failure(job.display_name, error or "step failed", exit_code=failed.exit_code, is_job=True)

        # ---- save ----
        if use_cache and job_status == SUCCESS:
            key, _manifest = run.cache.save(job, workspace=run.workspace, key=cache_key)
            run.cache.prune(job.id, keep=job.cache.keep)
            console.print_cache_saved(job.id, key)

        # ---- outputs ----
        ctx["env"] = job_env
        try:
            outputs = self._render_map(job, job.outputs, ctx)
        except ExpressionError as e:
            return finish(FAILURE, results, error=f"invalid job output: {e}")

        return finish(job_status, results, outputs=outputs, error=error)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(
        self,
        job: Job,
        step: Step,
        idx: int,
        ctx: Dict[str, Any],
        parent_env: Dict[str, str],
        backend,
        tmp: Path,
        deadline: Optional[float],
    ) -> StepResult:
        console = self.console
        start = time.monotonic()

        def result(status: str, *, exit_code=None, outputs=None, error=None) -> StepResult:
            return StepResult(
                step=step.name,
                id=step.id,
                status=status,
                exit_code=exit_code,
                outputs=outputs or {},
                duration=time.monotonic() - start,
                error=error,
            )

        try:
            ctx["env"] = parent_env
            if not evaluate_condition(step.if_, ctx):
                console.print_step_skipped(job.id, step.name, "condition false" if step.if_ else "previous step failed")
                return result(SKIPPED)
            step_env = self._layer(job, ctx, parent_env, step.env)
            ctx["env"] = step_env
        except ExpressionError as e:
            console.print_failure(step.name, str(e))
            return result(FAILURE, error=f"invalid expression: {e}")

        console.print_step(job.id, step.name)

        timeout = None
        if step.timeout_minutes:
            timeout = step.timeout_minutes * 60
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
            timeout = remaining if timeout is None else min(timeout, remaining)
            if remaining <= 0:
                return result(FAILURE, error="timed out before the step started")

        try:
            if step.uses is not None:
                # nested steps share whatever is left of this step's timeout
                step_deadline = None if timeout is None else time.monotonic() + timeout
                return self._run_action(job, step, idx, ctx, step_env, backend, tmp, step_deadline, result)
            return self._run_script(job, step, idx, ctx, step_env, backend, tmp, timeout, result)
        except (ExecutorError, ArtifactError, ExpressionError) as e:
            hint = e.details.get("hint") if isinstance(e, ExecutorError) else None
            message = e.message if isinstance(e, ExecutorError) else str(e)
            console.print_failure(step.name, message, hint=hint)
            return result(FAILURE, error=message)

    def _run_script(self, job, step, idx, ctx, step_env, backend, tmp: Path, timeout, result) -> StepResult:
        run = self.run_ctx
        console = self.console
        masker = console.masker

        script_text = self._render(job, step.run, ctx)
        suffix = ".py" if step.shell == "python" else ".sh"
        script = tmp / f"step-{idx}{suffix}"
        script.write_text(script_text + "\n", encoding="utf-8")
        output_file = tmp / f"output-{idx}"
        output_file.write_text("", encoding="utf-8")

        env = dict(step_env)
        env["FLOWCI_OUTPUT"] = backend.map_path(output_file, run.workspace)

        cwd = (run.workspace / self._render(job, step.working_directory or ".", ctx)).resolve()
        outputs: Dict[str, str] = {}

        def on_line(line: str) -> None:
            if line.startswith(ADD_MASK):
                masker.add(line[len(ADD_MASK):])
                return
            if line.startswith(SET_OUTPUT) and "::" in line[len(SET_OUTPUT):]:
                name, value = line[len(SET_OUTPUT):].split("::", 1)
                outputs[name.strip()] = value
                return
            console.print_step_output(job.id, line)

        proc = backend.run(
            script,
            shell=step.shell,
            workspace=run.workspace,
            cwd=cwd,
            env=env,
            timeout=timeout,
            on_line=on_line,
            job=job.id,
            step=step.name,
        )

        if output_file.exists():
            outputs.update(parse_output_file(output_file.read_text(encoding="utf-8")))

        if proc.timed_out:
            minutes = (timeout or 0) / 60
            error = f"timed out after {minutes:g} minute(s)"
            console.print_failure(step.name, error)
            return result(FAILURE, exit_code=proc.exit_code, outputs=outputs, error=error)

        if proc.exit_code != 0:
            failure = StepFailure(job=job.id, step=step.name, cmd=script_text, exit_code=proc.exit_code, stderr=proc.tail)
            console.print_failure(step.name, masker.mask(proc.tail) or str(failure), exit_code=proc.exit_code)
            return result(FAILURE, exit_code=proc.exit_code, outputs=outputs, error=masker.mask(str(failure)))

        return result(SUCCESS, exit_code=0, outputs=outputs)

    def _run_action(self, job, step, idx, ctx, step_env, backend, tmp: Path, deadline, result) -> StepResult:
        run = self.run_ctx
        uses = self._render(job, step.uses, ctx)
        with_ = self._render_map(job, step.with_, ctx)
        action = resolve_action(uses, run.workspace, job=job.id, step=step.name)

        if not isinstance(action, CompositeAction):
            call = ActionCall(
                job_id=job.id,
                step=step.name,
                with_=with_,
                workspace=run.workspace,
                artifacts=run.artifacts,
                console=self.console,
            )
            outputs = action(call)
            return result(SUCCESS, outputs=outputs)

        # composite: nested steps see their own `steps` and `inputs` contexts
        inputs = action.resolve_inputs(with_, job=job.id, step=step.name)
        nested = {**ctx, "steps": {}, "inputs": inputs, "job": dict(ctx["job"])}
        status = SUCCESS
        error = None
        for sub_idx, sub in enumerate(action.steps):
            nested["job"]["status"] = status
            sub_res = self._run_step(job, sub, f"{idx}-{sub_idx}", nested, step_env, backend, tmp, deadline)
            if sub_res.id:
                nested["steps"][sub_res.id] = {"outputs": sub_res.outputs, "outcome": sub_res.status}
            if sub_res.status == FAILURE and not sub.continue_on_error:
                status = FAILURE
                error = error or sub_res.error
        nested["env"] = step_env
        outputs = self._render_map(job, action.outputs, nested)
        return result(status, outputs=outputs, error=error)


def run_job(job: Job, run: RunContext, **kwargs) -> JobResult:
    """Convenience wrapper: JobExecutor(run).run(job, ...)"""
    return JobExecutor(run).run(job, **kwargs)
