"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..secrets import SecretMasker


class Console:
    """
    Centralized console output formatting.

    Jobs run on worker threads, so every write takes a lock, and every line
    passes through the secret masker before it reaches the terminal.
    """

    def __init__(self, debug: bool = False, quiet: bool = False, masker: Optional[SecretMasker] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, hide step output lines
            masker: Secret masker applied to every line
        """
        self.debug = debug
        self.quiet = quiet
        self.masker = masker or SecretMasker()
        self._lock = threading.Lock()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            print(self.masker.mask(text), file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        event: str | None = None,
    ) -> None:
        """Print run start information."""
        lines = [
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
        ]
        if event:
            lines.append(f"Event: {event}")
        self._out("\n".join(lines) + "\n")

    def print_stage(self, index: int, jobs: list[str]) -> None:
        self._out(f"=== Stage {index}: {', '.join(jobs)} ===")

    def print_job_start(self, name: str) -> None:
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, line: str) -> None:
        if self.quiet:
            return
        self._out(f"[{job}] | {line}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_job_finished(self, name: str, status: str, duration: float | None = None) -> None:
        suffix = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"[{name}] STATUS: {status}{suffix}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        elif reason:
            lines.append(f"Error: {reason.splitlines()[0]}")
        self._out("\n".join(lines))

    def print_cache_hit(self, job: str, reason: str) -> None:
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str, reason: str = "miss") -> None:
        self._out(f"[{job}] CACHE: {reason}")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_plan_job(self, name: str, reason: str) -> None:
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"  {name} (skipped: {reason})")

    def print_results(self, results: dict[str, str], status: str | None = None) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, job_status in results.items():
            lines.append(f"  {job}: {job_status.upper()}")
        if status:
            lines.append(f"\nWorkflow: {status.upper()}")
        self._out("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
