"""
Tests for the Python workflow DSL.
"""

import pytest

from flowci.dsl import build, job, matrix, notify, sh, uses, wf
from flowci.model import CacheSpec, Job


class TestSteps:
    """Tests for sh() and uses()."""

    def test_sh(self):
        step = sh("Test", "pytest -q", cwd="backend", env={"N": 2}, if_="always()")
        assert step.run == "pytest -q"
        assert step.working_directory == "backend"
        assert step.env == {"N": "2"}
        assert step.if_ == "always()"

    def test_uses_inputs(self):
        step = uses("upload-artifact", with_={"name": "dist"}, path="dist/", retention=3, overwrite=True)
        assert step.name == "upload-artifact"
        assert step.uses == "upload-artifact"
        assert step.with_ == {"name": "dist", "path": "dist/", "retention": "3", "overwrite": "true"}


class TestJob:
    """Tests for job() and the builder."""

    def test_steps_positional_and_list(self):
        j = job("a", sh("two", "b"), steps_list=[sh("one", "a")])
        assert [s.name for s in j.steps] == ["one", "two"]

    def test_no_steps(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_default_cwd(self):
        j = job("a", sh("x", "ls"), sh("y", "ls", cwd="sub"), cwd="app")
        assert [s.working_directory for s in j.steps] == ["app", "sub"]

    def test_cache_knobs(self):
        j = job("a", sh("x", "make"), cache_dirs=["build"], inputs=["src/**"], cache_skip_on_hit=True, cache_keep=1)
        assert j.cache == CacheSpec(paths=["build"], inputs=["src/**"], skip_on_hit=True, keep=1)
        assert job("b", sh("x", "make")).cache is None

    def test_builder(self):
        j = (
            build("test")
            .named("Unit tests")
            .depends_on("lint")
            .define_step("Install", "pip install -e .")
            .use_action("upload-artifact", path="report.xml")
            .with_env(PYTHONUNBUFFERED=1)
            .with_secrets("TOKEN")
            .with_paths("src/**")
            .runs_on("self-hosted", container="python:3.12")
            .with_matrix(matrix(python=["3.11", "3.12"]))
            .output("coverage", "${{ steps.cov.outputs.pct }}")
            .cache_dirs(".venv")
            .with_inputs("requirements.txt")
            .cache_behavior(skip_on_hit=True, key="v1")
            .build()
        )
        assert isinstance(j, Job)
        assert j.display_name == "Unit tests"
        assert j.needs == ["lint"]
        assert j.env == {"PYTHONUNBUFFERED": "1"}
        assert j.container == "python:3.12"
        assert j.paths == ["src/**"]
        assert j.strategy.matrix == {"python": ["3.11", "3.12"]}
        assert j.cache.paths == [".venv"]
        assert j.cache.key == "v1"
        assert j.cache.inputs == ["requirements.txt"]

    def test_builder_without_steps(self):
        with pytest.raises(ValueError, match="has no steps"):
            build("x").build()


class TestNotify:
    """Tests for notify()."""

    def test_valid(self):
        n = notify("slack", "https://hooks.slack.example", on="always", channel="#ci")
        assert n.on == ["always"]
        assert n.channel == "#ci"

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="unknown notification type"):
            notify("email", "x")

    def test_needs_url(self):
        with pytest.raises(ValueError, match="needs a url"):
            notify("webhook")

    def test_unknown_outcome(self):
        with pytest.raises(ValueError, match="outcome"):
            notify("console", on=["sometimes"])


class TestWorkflow:
    """Tests for wf()."""

    def test_named(self):
        w = wf("ci", job("a", sh("x", "true")), on={"push": {"branches": ["main"]}}, env={"DEBUG": 0})
        assert w.name == "ci"
        assert [t.event for t in w.triggers] == ["push"]
        assert w.triggers[0].branches == ["main"]
        assert w.env == {"DEBUG": "0"}

    def test_unnamed(self):
        w = wf(job("a", sh("x", "true")), job("b", sh("y", "true")))
        assert w.name == "workflow"
        assert [j.id for j in w.jobs] == ["a", "b"]

    def test_no_jobs(self):
        with pytest.raises(ValueError, match="at least one job"):
            wf("ci")
