# step_workflows/shell.py
from __future__ import annotations

import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..errors import TOOL_HINTS, ExecutorError


@dataclass
class ProcessResult:
    exit_code: int
    timed_out: bool = False
    tail: str = ""  # last lines of output, for failure messages


def stream_process(
    cmd: List[str],
    *,
    cwd: Optional[Path],
    env: Optional[Dict[str, str]],
    timeout: Optional[float],
    on_line: Callable[[str], None],
    tail_lines: int = 20,
) -> ProcessResult:
    """
    Run `cmd`, feeding each output line (stdout and stderr merged) to
    `on_line` as it arrives. Kills the process after `timeout` seconds.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=str(cwd) if cwd is not None else None,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        text=True,
        errors="replace",
        bufsize=1,
    )

    timed_out = threading.Event()

    def _kill() -> None:
        timed_out.set()
        proc.kill()

    timer = threading.Timer(timeout, _kill) if timeout else None
    if timer is not None:
        timer.daemon = True
        timer.start()

    tail: List[str] = []
    try:
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = raw.rstrip("\r\n")
            tail.append(line)
            if len(tail) > tail_lines:
                tail.pop(0)
            on_line(line)
        exit_code = proc.wait()
    finally:
        if timer is not None:
            timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()

    return ProcessResult(exit_code=exit_code, timed_out=timed_out.is_set(), tail="\n".join(tail))


def shell_command(shell: str | None, script: Path) -> List[str]:
    """
    Command line that runs a script file with the requested shell.

      None    bash -e (sh -e when bash is missing)
      bash    bash --noprofile --norc -eo pipefail
      sh      sh -e
      python  the current interpreter
    """
    if shell in (None, ""):
        shell = "bash" if shutil.which("bash") else "sh"
    if shell == "bash":
        return ["bash", "--noprofile", "--norc", "-eo", "pipefail", str(script)]
    if shell == "sh":
        return ["sh", "-e", str(script)]
    if shell == "python":
        return [sys.executable, str(script)]
    # custom template, e.g. "pwsh -File {0}"
    if "{0}" in shell:
        return [part.replace("{0}", str(script)) for part in shell.split()]
    return [shell, str(script)]


class LocalBackend:
    """Runs steps as subprocesses on the host, inside the job workspace."""

    name = "local"

    def map_path(self, path: Path, workspace: Path) -> str:
        return str(path)

    def run(
        self,
        script: Path,
        *,
        shell: str | None,
        workspace: Path,
        cwd: Path,
        env: Dict[str, str],
        timeout: Optional[float],
        on_line: Callable[[str], None],
        job: str = "",
        step: str | None = None,
    ) -> ProcessResult:
        if not cwd.exists():
            raise ExecutorError(
                kind="cwd_missing",
                job=job,
                step=step,
                message=f"working directory not found: {cwd}",
            )
        cmd = shell_command(shell, script)
        try:
            return stream_process(cmd, cwd=cwd, env=env, timeout=timeout, on_line=on_line)
        except FileNotFoundError:
            tool = cmd[0]
            raise ExecutorError(
                kind="tool_unavailable",
                job=job,
                step=step,
                message=f"{tool} is not available",
                details={"hint": TOOL_HINTS.get(Path(tool).name, f"Install {tool} or fix PATH.")},
            ) from None
