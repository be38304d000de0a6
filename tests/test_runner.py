"""
Tests for scheduling a whole workflow run.
"""

from unittest.mock import Mock

import pytest

from flowci.dsl import job, matrix, notify, sh, wf
from flowci.errors import WorkflowError
from flowci.model import CANCELLED, FAILURE, SKIPPED, SUCCESS, Event
from flowci.notify import Notifier
from flowci.runner import needs_context, new_run_id, run_workflow, select_jobs


@pytest.fixture
def run(workspace, tmp_path, console):
    def _run(workflow, **kwargs):
        kwargs.setdefault("event", Event(name="push", branch="main", ref="refs/heads/main"))
        kwargs.setdefault("cache_root", tmp_path / "cache")
        kwargs.setdefault("artifact_root", tmp_path / "artifacts")
        kwargs.setdefault("max_workers", 2)
        kwargs.setdefault("notifier", Mock(spec=Notifier))
        return run_workflow(workflow, workspace=workspace, console=console, **kwargs)
    return _run


def _ok(id, **kwargs):
    return job(id, sh("ok", "true"), **kwargs)


def _fail(id, **kwargs):
    return job(id, sh("fail", "exit 1"), **kwargs)


class TestSelectJobs:
    """Tests for path-based job selection."""

    def test_disabled(self):
        selected, reasons = select_jobs([_ok("a", paths=["src/**"])], use_git_diff=False, changed_files=["x"])
        assert selected == {"a"}
        assert reasons["a"] == "git diff disabled"

    def test_no_diff(self):
        _sel, reasons = select_jobs([_ok("a")], use_git_diff=True, changed_files=None)
        assert reasons["a"] == "no diff available"

    def test_matching(self):
        jobs = [_ok("docs", paths=["docs/**"]), _ok("code", paths=["src/**"]), _ok("all")]
        selected, reasons = select_jobs(jobs, use_git_diff=True, changed_files=["docs/index.md"])
        assert selected == {"docs", "all"}
        assert reasons["all"] == "no paths specified"
        assert reasons["code"] == "no changed file matches ['src/**']"


class TestRunWorkflow:
    """Tests for run_workflow."""

    def test_needs_outputs(self, run):
        w = wf(
            "ci",
            job("a", sh("set", 'echo "v=42" >> "$FLOWCI_OUTPUT"', id="s"), outputs={"v": "${{ steps.s.outputs.v }}"}),
            job("b", sh("use", "true"), needs=["a"], outputs={"got": "${{ needs.a.outputs.v }}"}),
        )
        result = run(w)
        assert result.status == SUCCESS
        assert result.ok
        assert list(result.jobs) == ["a", "b"]
        assert result.jobs["b"].outputs == {"got": "42"}

    def test_dependent_skipped_after_failure(self, run):
        w = wf(
            "ci",
            _fail("a"),
            _ok("b", needs=["a"]),
            _ok("cleanup", needs=["a"], if_="always()"),
            _ok("c", needs=["b"]),
        )
        result = run(w, fail_fast=False)
        assert result.status == FAILURE
        assert not result.ok
        assert result.summary() == {"a": FAILURE, "b": SKIPPED, "cleanup": SUCCESS, "c": SKIPPED}
        assert result.jobs["b"].error == "dependency failure"

    def test_fail_fast_cancels_pending(self, run):
        w = wf("ci", _fail("a"), _ok("b"))
        result = run(w, max_workers=1)
        assert result.summary() == {"a": FAILURE, "b": CANCELLED}

    def test_no_fail_fast(self, run):
        w = wf("ci", _fail("a"), _ok("b"))
        result = run(w, max_workers=1, fail_fast=False)
        assert result.summary() == {"a": FAILURE, "b": SUCCESS}

    def test_fail_fast_keeps_status_function_jobs(self, run):
        w = wf(
            "ci",
            _fail("a"),
            _ok("b", needs=["a"]),
            _ok("cleanup", needs=["a"], if_="${{ always() }}"),
            _ok("report", needs=["a"], if_="${{ failure() }}"),
        )
        result = run(w)
        assert result.summary() == {"a": FAILURE, "b": SKIPPED, "cleanup": SUCCESS, "report": SUCCESS}

    def test_fail_fast_runs_independent_status_jobs_as_cancelled(self, run):
        w = wf("ci", _fail("a"), _ok("z", if_="always()"), _ok("y", if_="success()"), _ok("x", if_="cancelled()"))
        result = run(w, max_workers=1)
        assert result.summary() == {"a": FAILURE, "z": SUCCESS, "y": SKIPPED, "x": SUCCESS}
        assert result.jobs["y"].error == "dependency cancelled"

    def test_fail_fast_leaves_non_fail_fast_matrix_running(self, run):
        w = wf(
            "ci",
            job("t", sh("t", "test ${{ matrix.n }} != 1"), matrix=matrix(n=[1, 2, 3], fail_fast=False, max_parallel=1)),
        )
        result = run(w)
        assert result.summary() == {"t-1": FAILURE, "t-2": SUCCESS, "t-3": SUCCESS}

    def test_fail_fast_from_other_job_cancels_non_fail_fast_matrix(self, run):
        w = wf("ci", _fail("a"), job("t", sh("t", "true"), matrix=matrix(n=[1, 2], fail_fast=False)))
        result = run(w, max_workers=1)
        assert result.summary() == {"a": FAILURE, "t-1": CANCELLED, "t-2": CANCELLED}

    def test_allowed_failure(self, run):
        w = wf("ci", _fail("a", continue_on_error=True), _ok("b", needs=["a"]))
        result = run(w)
        assert result.status == SUCCESS
        assert result.jobs["a"].status == FAILURE
        assert result.jobs["b"].status == SUCCESS

    def test_matrix_fail_fast(self, run):
        w = wf(
            "ci",
            job("t", sh("t", "test ${{ matrix.n }} != 1"), matrix=matrix(n=[1, 2, 3], max_parallel=1)),
            _ok("other"),
        )
        result = run(w, fail_fast=False)
        assert result.summary() == {"t-1": FAILURE, "t-2": CANCELLED, "t-3": CANCELLED, "other": SUCCESS}

    def test_matrix_without_fail_fast(self, run):
        w = wf(
            "ci",
            job("t", sh("t", "test ${{ matrix.n }} != 1"), matrix=matrix(n=[1, 2], fail_fast=False, max_parallel=1)),
            _ok("after", needs=["t"], if_="always()", outputs={"r": "${{ needs.t.result }}"}),
        )
        result = run(w, fail_fast=False)
        assert result.jobs["t-2"].status == SUCCESS
        assert result.jobs["after"].outputs == {"r": FAILURE}

    def test_not_triggered(self, run):
        w = wf("ci", _ok("a"), on={"push": {"branches": ["release/*"]}})
        result = run(w)
        assert result.status == SKIPPED
        assert result.ok
        assert result.jobs == {}

    def test_only(self, run):
        w = wf("ci", _ok("a"), _ok("b", needs=["a"]), _ok("c"))
        result = run(w, only=["b"])
        assert list(result.jobs) == ["a", "b"]

    def test_only_unknown(self, run):
        with pytest.raises(WorkflowError, match="Unknown job 'nope'"):
            run(wf("ci", _ok("a")), only=["nope"])

    def test_dry_run(self, run, workspace, capsys):
        w = wf("ci", job("a", sh("touch", "touch ran")), _ok("b", needs=["a"]))
        result = run(w, dry_run=True)
        assert result.status == SKIPPED
        assert {r.error for r in result.jobs.values()} == {"dry run"}
        assert not (workspace / "ran").exists()
        assert "=== Stage 1: a ===" in capsys.readouterr().out

    def test_path_selection(self, run):
        w = wf(
            "ci",
            _ok("docs", paths=["docs/**"]),
            _ok("code", paths=["src/**"]),
            _ok("after", needs=["code"]),
        )
        event = Event(name="push", branch="main", changed_files=["docs/guide.md"])
        result = run(w, event=event, use_git_diff=True)
        assert result.status == SUCCESS
        assert result.summary() == {"docs": SUCCESS, "code": SKIPPED, "after": SKIPPED}

    def test_secrets_masked(self, run, capsys):
        w = wf("ci", _ok("a", secrets=["TOKEN"]), job("b", sh("leak", 'echo "token=${{ secrets.TOKEN }}"'), secrets=["TOKEN"]))
        run(w, secrets={"TOKEN": "very-secret"})
        out = capsys.readouterr().out
        assert "token=***" in out
        assert "very-secret" not in out


class TestNotifications:
    """Tests for job and workflow notifications."""

    def test_job_and_workflow_notifications(self, run):
        notifier = Mock(spec=Notifier)
        hook = notify("webhook", "https://hooks.example.com/${{ secrets.HOOK }}")
        w = wf(
            "ci",
            _fail("a", secrets=["HOOK"], notifications=[hook]),
            _ok("b", needs=["a"], notifications=[hook]),
            notifications=[notify("console", on="always")],
        )
        run(w, secrets={"HOOK": "abc", "OTHER": "x"}, notifier=notifier, fail_fast=False)

        calls = notifier.dispatch.call_args_list
        # b was skipped, so only a's job notification and the run notification
        assert len(calls) == 2
        event, notifications, ctx = calls[0].args
        assert event.job == "a"
        assert event.status == FAILURE
        assert notifications == [hook]
        assert ctx["secrets"] == {"HOOK": "abc"}

        event, _notifications, ctx = calls[1].args
        assert event.job is None
        assert event.status == FAILURE
        assert ctx["secrets"] == {"HOOK": "abc"}


class TestHelpers:
    """Tests for small runner helpers."""

    def test_run_id_unique(self):
        assert new_run_id() != new_run_id()

    def test_needs_context_groups_matrix(self):
        from flowci.dag import expanded_jobs
        from flowci.model import JobResult

        w = wf("ci", job("t", sh("t", "true"), matrix=matrix(n=[1, 2])), _ok("after", needs=["t"]))
        jobs = expanded_jobs(w)
        by_id = {j.id: j for j in jobs}
        results = {
            "t-1": JobResult(job_id="t-1", status=SUCCESS, outputs={"a": "1"}),
            "t-2": JobResult(job_id="t-2", status=FAILURE, outputs={"b": "2"}),
        }
        ctx = needs_context(by_id["after"], by_id, results)
        assert ctx["t"] == {"result": FAILURE, "outputs": {"a": "1", "b": "2"}}
        assert ctx["t-1"]["result"] == SUCCESS
