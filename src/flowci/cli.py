# cli.py
from __future__ import annotations

import sys
import time
from pathlib import Path

import click

from .cache import CacheStore
from .dag import expanded_jobs, plan as plan_stages
from .errors import WorkflowError
from .git_facts.git import GitError, get_remote_url
from .loader import find_workflow_files, load_workflow
from .model import Event
from .notify import Notifier
from .runner import run_workflow
from .secrets import SecretStore, parse_assignments
from .settings import Settings
from .triggers import describe
from .ui.console import Console, get_console, set_console

EXIT_FAILURE = 1
EXIT_WORKFLOW_ERROR = 2
EXIT_INTERRUPTED = 130


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Args:
        workflow_arg: Optional workflow argument from CLI

    Returns:
        Path to workflow file

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  flowci run .flowci/ci.yml",
            )
            sys.exit(EXIT_WORKFLOW_ERROR)
        return workflow_path

    # Otherwise, try to discover workflow
    workflow_files = find_workflow_files(".")

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  flowci.yml / flowci.yaml",
                "  .flowci/*.yml",
                "  *_workflow.py",
            ],
            suggestion="Create flowci.yml, or specify a workflow explicitly:\n  flowci run path/to/workflow.yml",
        )
        sys.exit(EXIT_WORKFLOW_ERROR)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  flowci run {workflow_files[0]}",
        )
        sys.exit(EXIT_WORKFLOW_ERROR)

    return workflow_files[0]


def _load(workflow_arg: str | None):
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return workflow_path, load_workflow(workflow_path)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)


def _repository_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (GitError, OSError):
        return Path(".").resolve().name


def _settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Hide step output lines")
@click.pass_context
def cli(ctx, debug, quiet):
    """flowci: run CI workflows locally."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", "event_name", default="push", show_default=True, help="Event to evaluate triggers against")
@click.option("--branch", default=None, help="Branch name (defaults to the current git branch)")
@click.option("--tag", default=None, help="Tag name, for tag-triggered workflows")
@click.option("--secret", "secret_items", multiple=True, metavar="KEY=VALUE", help="Secret value (repeatable)")
@click.option("--secrets-file", default=None, help="YAML or .env file with secrets")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--artifact-dir", default=None, help="Artifact directory")
@click.option("--no-cache", is_flag=True, default=False, help="Run without restoring or saving job caches")
@click.option("--fail-fast/--no-fail-fast", default=True, help="Stop scheduling new jobs after first failure")
@click.option("--git-diff/--no-git-diff", default=False, help="Select jobs based on git diff and job paths")
@click.option("--compare-ref", default=None, help="Git ref to diff against (default: origin/main)")
@click.option("--job", "only", multiple=True, help="Run only this job and what it needs (repeatable)")
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan without running anything")
@click.pass_context
def run(
    ctx,
    workflow,
    event_name,
    branch,
    tag,
    secret_items,
    secrets_file,
    workers,
    cache_dir,
    artifact_dir,
    no_cache,
    fail_fast,
    git_diff,
    compare_ref,
    only,
    dry_run,
):
    """Run a flowci workflow."""
    console = get_console()
    settings = _settings()
    compare_ref = compare_ref or settings.compare_ref

    workflow_path, wf = _load(workflow)

    try:
        explicit = parse_assignments(secret_items)
        store = SecretStore.load(
            secrets_file=secrets_file or settings.secrets_file,
            explicit=explicit,
        )
    except (ValueError, WorkflowError) as e:
        console.print_error("Invalid secrets", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)

    event = Event.from_git(event_name, compare_ref=compare_ref if git_diff else None)
    if branch:
        event.branch = branch
        event.ref = f"refs/heads/{branch}"
    if tag:
        event.tag = tag
        event.ref = f"refs/tags/{tag}"

    try:
        console.print_run_started(
            repository=_repository_name(),
            workflow=f"{wf.name} ({workflow_path})",
            job_count=len(wf.jobs),
            event=event_name,
        )

        result = run_workflow(
            wf,
            event=event,
            workspace=".",
            secrets=store,
            cache_root=None if no_cache else (cache_dir or settings.cache_dir),
            artifact_root=artifact_dir or settings.artifact_dir,
            max_workers=workers or settings.workers,
            fail_fast=fail_fast,
            use_git_diff=git_diff,
            compare_ref=compare_ref,
            dry_run=dry_run,
            only=list(only) or None,
            console=console,
            notifier=Notifier(timeout=settings.notify_timeout, console=console),
        )

        if result.jobs and not dry_run:
            console.print_results(result.summary(), result.status)
        console.print_debug(f"run {result.run_id} finished in {result.duration:.1f}s")

        if not result.ok:
            sys.exit(EXIT_FAILURE)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.argument("workflow", required=False)
def validate(workflow):
    """Load and validate a workflow without running it."""
    console = get_console()
    workflow_path, wf = _load(workflow)
    try:
        jobs = expanded_jobs(wf)
        plan_stages(wf)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)

    console.print_info(f"{workflow_path}: OK")
    console.print_info(f"Workflow: {wf.name}")
    console.print_info(f"Jobs: {len(wf.jobs)} ({len(jobs)} after matrix expansion)")
    for line in describe(wf):
        console.print_info(f"Trigger: {line}")


@cli.command()
@click.argument("workflow", required=False)
def plan(workflow):
    """Print execution stages after matrix expansion."""
    console = get_console()
    _path, wf = _load(workflow)
    try:
        by_id = {j.id: j for j in expanded_jobs(wf)}
        stages = plan_stages(wf)
    except WorkflowError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_WORKFLOW_ERROR)

    for idx, level in enumerate(stages, start=1):
        console.print_stage(idx, level)
        for job_id in level:
            job = by_id[job_id]
            needs = f"needs {', '.join(job.needs)}" if job.needs else "no dependencies"
            console.print_plan_job(job.display_name, needs)


# ----------------------------------------------------------------------
# cache
# ----------------------------------------------------------------------

@cli.group()
def cache():
    """Inspect or clear the job cache."""


@cache.command("list")
@click.option("--job", "job_id", default=None, help="Only this job's entries")
@click.option("--cache-dir", default=None, help="Cache directory")
def cache_list(job_id, cache_dir):
    """List cached artifacts, newest first."""
    console = get_console()
    store = CacheStore(cache_dir or _settings().cache_dir)
    entries = store.entries(job_id)
    if not entries:
        console.print_info("No cache entries.")
        return
    for e in entries:
        when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e["mtime"]))
        console.print_info(f"{e['job']}  {e['key'][:12]}  {e['size'] / 1024:.1f} KiB  {when}")


@cache.command("clear")
@click.option("--job", "job_id", default=None, help="Only clear this job's entries")
@click.option("--cache-dir", default=None, help="Cache directory")
def cache_clear(job_id, cache_dir):
    """Delete cached artifacts."""
    store = CacheStore(cache_dir or _settings().cache_dir)
    removed = store.clear(job_id)
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
