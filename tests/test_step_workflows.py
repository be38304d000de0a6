"""
Tests for the host shell and Docker step backends.
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from flowci.errors import ExecutorError
from flowci.step_workflows import DockerBackend, LocalBackend, ProcessResult
from flowci.step_workflows.docker import image_for
from flowci.step_workflows.shell import shell_command, stream_process


class TestShellCommand:
    """Tests for shell_command."""

    def test_named_shells(self):
        script = Path("/tmp/s.sh")
        assert shell_command("bash", script) == ["bash", "--noprofile", "--norc", "-eo", "pipefail", "/tmp/s.sh"]
        assert shell_command("sh", script) == ["sh", "-e", "/tmp/s.sh"]
        assert shell_command("python", script) == [sys.executable, "/tmp/s.sh"]

    def test_template(self):
        assert shell_command("pwsh -File {0}", Path("/tmp/s.ps1")) == ["pwsh", "-File", "/tmp/s.ps1"]


class TestLocalBackend:
    """Tests for running scripts on the host."""

    def test_streams_lines(self, tmp_path):
        lines = []
        result = stream_process(
            [sys.executable, "-c", "print('one'); print('two')"],
            cwd=tmp_path,
            env=None,
            timeout=None,
            on_line=lines.append,
        )
        assert result.exit_code == 0
        assert lines == ["one", "two"]
        assert result.tail == "one\ntwo"

    def test_missing_tool(self, tmp_path):
        script = tmp_path / "s.sh"
        script.write_text("true\n")
        with pytest.raises(ExecutorError) as exc:
            LocalBackend().run(
                script,
                shell="no-such-shell-xyz",
                workspace=tmp_path,
                cwd=tmp_path,
                env={},
                timeout=None,
                on_line=lambda line: None,
                job="j",
                step="s",
            )
        assert exc.value.kind == "tool_unavailable"
        assert "Install no-such-shell-xyz" in exc.value.details["hint"]


class TestDockerBackend:
    """Tests for the container backend, with docker itself mocked out."""

    def test_image_for(self):
        assert image_for("local", None) is None
        assert image_for("ubuntu-latest", None) is None
        assert image_for("docker://python:3.12", None) == "python:3.12"
        assert image_for("local", "node:20") == "node:20"

    def test_build_command(self, tmp_path):
        ws = tmp_path.resolve()
        (ws / "app").mkdir()
        backend = DockerBackend("python:3.12", volumes=["cache:/root/.cache"])
        cmd = backend.build_command(
            ws / ".flowci" / "step-0.sh",
            shell=None,
            workspace=ws,
            cwd=ws / "app",
            env={"PATH": "/usr/bin", "CI": "true", "TOKEN": "s3cr3t"},
        )
        assert cmd[:5] == ["docker", "run", "--rm", "-v", f"{ws}:/workspace"]
        assert ["-v", "cache:/root/.cache"] == cmd[5:7]
        assert ["-w", "/workspace/app"] == cmd[7:9]
        assert ["-e", "CI", "-e", "TOKEN"] == cmd[9:13]
        assert "PATH" not in cmd
        assert not any("s3cr3t" in part for part in cmd)
        assert cmd[-4:] == ["python:3.12", "sh", "-e", "/workspace/.flowci/step-0.sh"]

    def test_map_path(self, tmp_path):
        backend = DockerBackend("alpine")
        assert backend.map_path(tmp_path / "out" / "x", tmp_path) == "/workspace/out/x"

    def test_run_checks_docker_once(self, tmp_path):
        backend = DockerBackend("alpine")
        with patch("flowci.step_workflows.docker._check_docker_available") as check, \
                patch("flowci.step_workflows.docker.stream_process", return_value=ProcessResult(exit_code=0)) as stream:
            for _ in range(2):
                backend.run(
                    tmp_path / "s.sh",
                    shell="sh",
                    workspace=tmp_path,
                    cwd=tmp_path,
                    env={},
                    timeout=5,
                    on_line=lambda line: None,
                )
        check.assert_called_once()
        assert stream.call_count == 2
        assert stream.call_args.kwargs["timeout"] == 5

    def test_run_passes_values_through_environment(self, tmp_path):
        backend = DockerBackend("alpine")
        backend._checked = True
        with patch("flowci.step_workflows.docker.stream_process", return_value=ProcessResult(exit_code=0)) as stream:
            backend.run(
                tmp_path / "s.sh",
                shell="sh",
                workspace=tmp_path,
                cwd=tmp_path,
                env={"TOKEN": "s3cr3t", "HOME": "/nowhere"},
                timeout=None,
                on_line=lambda line: None,
            )
        cmd = stream.call_args.args[0]
        proc_env = stream.call_args.kwargs["env"]
        assert ["-e", "TOKEN"] == cmd[cmd.index("-e"):cmd.index("-e") + 2]
        assert "HOME" not in cmd
        assert not any("s3cr3t" in part for part in cmd)
        assert proc_env["TOKEN"] == "s3cr3t"
        assert "PATH" in proc_env

    def test_docker_missing(self, tmp_path):
        with patch("flowci.step_workflows.docker.shutil.which", return_value=None):
            with pytest.raises(ExecutorError) as exc:
                DockerBackend("alpine").run(
                    tmp_path / "s.sh",
                    shell=None,
                    workspace=tmp_path,
                    cwd=tmp_path,
                    env={},
                    timeout=None,
                    on_line=lambda line: None,
                    job="j",
                )
        assert exc.value.kind == "docker_unavailable"
