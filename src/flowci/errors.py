# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


class FlowCIError(Exception):
    """Base class for every error raised by flowci."""


class WorkflowError(FlowCIError):
    """
    A workflow definition could not be loaded or is invalid.

    Carries every problem found so the CLI can show them all at once
    instead of making the user fix one line per run.
    """

    def __init__(self, message: str, *, source: Optional[str] = None, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.source = source
        self.problems = list(problems or [])

    def __str__(self) -> str:
        head = f"{self.source}: {self.message}" if self.source else self.message
        if not self.problems:
            return head
        return "\n".join([head] + [f"  - {p}" for p in self.problems])


class ExpressionError(FlowCIError):
    """Raised for malformed ${{ }} expressions and if: conditions."""


@dataclass
class ExecutorError(FlowCIError):
    """
    Structured execution error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(FlowCIError):
    job: str
    step: str
    cmd: str
    exit_code: int
    stderr: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class ArtifactError(FlowCIError):
    """Raised when an artifact cannot be uploaded or downloaded."""


class NotificationError(FlowCIError):
    """Raised by notification channels; the notifier logs and swallows it."""


TOOL_HINTS: Dict[str, str] = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or fix PATH.",
    "bash": "Install bash or use `shell: sh`.",
    "python": "Install Python 3 or fix PATH.",
}
