# step_workflows/docker.py
from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from ..errors import TOOL_HINTS, ExecutorError
from .shell import ProcessResult, stream_process

CONTAINER_WORKSPACE = "/workspace"

# host-only variables make no sense inside the image
HOST_ONLY_ENV = ("PATH", "HOME", "SHELL", "TMPDIR", "USER")


def image_for(runs_on: str, container: Optional[str]) -> Optional[str]:
    """Image a job should run in, or None for the host."""
    if container:
        return container
    if runs_on.startswith("docker://"):
        return runs_on[len("docker://"):]
    return None


def _check_docker_available(job: str) -> None:
    """Check if Docker is available, raise helpful error if not."""
    if shutil.which("docker") is None:
        raise ExecutorError(
            kind="docker_unavailable",
            job=job,
            step=None,
            message="Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        )
    try:
        subprocess.run(["docker", "version"], capture_output=True, check=True, timeout=30)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        raise ExecutorError(
            kind="docker_unavailable",
            job=job,
            step=None,
            message="Docker daemon is not reachable",
            details={"hint": TOOL_HINTS["docker"]},
        ) from None


def to_container_path(path: Path, workspace: Path) -> str:
    rel = path.resolve().relative_to(workspace.resolve())
    return str(PurePosixPath(CONTAINER_WORKSPACE) / rel.as_posix())


class DockerBackend:
    """
    Runs each step in a fresh container with the workspace mounted at
    /workspace. Only the job's own environment is passed in.
    """

    name = "docker"

    def __init__(self, image: str, *, volumes: Optional[List[str]] = None, user: Optional[str] = None):
        self.image = image
        self.volumes = list(volumes or [])
        self.user = user
        self._checked = False

    def map_path(self, path: Path, workspace: Path) -> str:
        return to_container_path(path, workspace)

    def container_env(self, env: Dict[str, str]) -> Dict[str, str]:
        return {k: v for k, v in env.items() if k not in HOST_ONLY_ENV}

    def build_command(
        self,
        script: Path,
        *,
        shell: str | None,
        workspace: Path,
        cwd: Path,
        env: Dict[str, str],
    ) -> List[str]:
        ws = workspace.resolve()
        cmd = ["docker", "run", "--rm", "-v", f"{ws}:{CONTAINER_WORKSPACE}"]
        for vol in self.volumes:
            cmd.extend(["-v", vol])
        cmd.extend(["-w", to_container_path(cwd, ws)])

        # names only; values reach docker through its own environment
        for key in self.container_env(env):
            cmd.extend(["-e", key])

        if self.user:
            cmd.extend(["--user", self.user])

        cmd.append(self.image)
        script_in_container = to_container_path(script, ws)
        if shell == "python":
            cmd.extend(["python", script_in_container])
        elif shell == "bash":
            cmd.extend(["bash", "-eo", "pipefail", script_in_container])
        else:
            cmd.extend(["sh", "-e", script_in_container])
        return cmd

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
        if not self._checked:
            _check_docker_available(job)
            self._checked = True
        cmd = self.build_command(script, shell=shell, workspace=workspace, cwd=cwd, env=env)
        proc_env = dict(os.environ)
        proc_env.update(self.container_env(env))
        return stream_process(cmd, cwd=workspace, env=proc_env, timeout=timeout, on_line=on_line)
