"""
Tests for built-in and composite actions.
"""

import pytest

from flowci.actions import (
    ActionCall,
    BUILTIN_ACTIONS,
    CompositeAction,
    load_composite,
    normalize_name,
    resolve_action,
)
from flowci.artifacts import ArtifactStore
from flowci.errors import ArtifactError, ExecutorError


def _call(workspace, artifacts, console, **with_):
    return ActionCall(
        job_id="build",
        step="step",
        with_={k.replace("_", "-"): v for k, v in with_.items()},
        workspace=workspace,
        artifacts=artifacts,
        console=console,
    )


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "artifacts", "run-1")


class TestResolution:
    """Tests for action name resolution."""

    @pytest.mark.parametrize("uses,expected", [
        ("checkout", "checkout"),
        ("actions/upload-artifact@v4", "upload-artifact"),
        ("flowci/echo@main", "echo"),
    ])
    def test_normalize_name(self, uses, expected):
        assert normalize_name(uses) == expected

    def test_builtin(self, workspace):
        fn = resolve_action("actions/echo@v1", workspace, job="j", step="s")
        assert fn is BUILTIN_ACTIONS["echo"]

    def test_unknown(self, workspace):
        with pytest.raises(ExecutorError) as exc:
            resolve_action("setup-node", workspace, job="j", step="s")
        assert exc.value.kind == "action_unknown"
        assert "checkout" in exc.value.details["available"]

    def test_missing_composite(self, workspace):
        with pytest.raises(ExecutorError) as exc:
            resolve_action("./actions/none", workspace, job="j", step="s")
        assert exc.value.kind == "action_invalid"


class TestBuiltins:
    """Tests for the in-process actions."""

    def test_echo(self, workspace, artifacts, console, capsys):
        out = BUILTIN_ACTIONS["echo"](_call(workspace, artifacts, console, message="hello\nworld"))
        assert out == {"message": "hello\nworld"}
        printed = capsys.readouterr().out
        assert "[build] | hello" in printed
        assert "[build] | world" in printed

    def test_upload_then_download(self, workspace, artifacts, console, tmp_path):
        (workspace / "dist").mkdir()
        (workspace / "dist" / "a.txt").write_text("a")
        (workspace / "b.txt").write_text("b")

        out = BUILTIN_ACTIONS["upload-artifact"](
            _call(workspace, artifacts, console, name="dist", path="dist\nb.txt")
        )
        assert out == {"files": "2"}

        other = tmp_path / "other"
        other.mkdir()
        out = BUILTIN_ACTIONS["download-artifact"](
            _call(other, artifacts, console, name="dist", path="restored")
        )
        assert (other / "restored" / "dist" / "a.txt").read_text() == "a"
        assert out["download-path"] == str((other / "restored").resolve())

    def test_upload_needs_path(self, workspace, artifacts, console):
        with pytest.raises(ExecutorError, match="needs 'path'"):
            BUILTIN_ACTIONS["upload-artifact"](_call(workspace, artifacts, console, name="x"))

    def test_upload_missing_files(self, workspace, artifacts, console):
        with pytest.raises(ArtifactError):
            BUILTIN_ACTIONS["upload-artifact"](_call(workspace, artifacts, console, path="nope/*"))

    def test_upload_missing_files_ignored(self, workspace, artifacts, console):
        call = _call(workspace, artifacts, console, path="nope/*", if_no_files_found="ignore")
        assert BUILTIN_ACTIONS["upload-artifact"](call) == {"files": "0"}

    def test_checkout_without_ref(self, workspace, artifacts, console):
        assert BUILTIN_ACTIONS["checkout"](_call(workspace, artifacts, console)) == {}


ACTION_YML = """\
name: greet
inputs:
  who:
    required: true
  greeting:
    default: hello
  shout:
    default: false
outputs:
  text:
    value: ${{ steps.say.outputs.text }}
runs:
  using: composite
  steps:
    - id: say
      run: echo "text=${{ inputs.greeting }} ${{ inputs.who }}" >> "$FLOWCI_OUTPUT"
"""


class TestComposite:
    """Tests for composite actions loaded from action.yml."""

    def _write(self, workspace, text=ACTION_YML):
        d = workspace / ".flowci" / "actions" / "greet"
        d.mkdir(parents=True)
        (d / "action.yml").write_text(text)
        return d

    def test_load(self, workspace):
        action = load_composite(self._write(workspace))
        assert isinstance(action, CompositeAction)
        assert action.name == "greet"
        assert [s.id for s in action.steps] == ["say"]
        assert action.outputs == {"text": "${{ steps.say.outputs.text }}"}
        assert action.inputs["shout"].default == "false"

    def test_resolve_relative(self, workspace):
        self._write(workspace)
        action = resolve_action("./.flowci/actions/greet", workspace, job="j", step="s")
        assert isinstance(action, CompositeAction)

    def test_inputs_defaults(self, workspace):
        action = load_composite(self._write(workspace))
        values = action.resolve_inputs({"who": "world"}, job="j", step="s")
        assert values == {"who": "world", "greeting": "hello", "shout": "false"}

    def test_required_input(self, workspace):
        action = load_composite(self._write(workspace))
        with pytest.raises(ExecutorError, match="requires input 'who'"):
            action.resolve_inputs({}, job="j", step="s")

    def test_unknown_input(self, workspace):
        action = load_composite(self._write(workspace))
        with pytest.raises(ExecutorError, match="has no input"):
            action.resolve_inputs({"who": "x", "color": "red"}, job="j", step="s")

    def test_only_composite(self, workspace):
        d = self._write(workspace, ACTION_YML.replace("using: composite", "using: node20"))
        with pytest.raises(ValueError, match="only composite actions"):
            load_composite(d)
