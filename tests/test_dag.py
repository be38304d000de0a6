"""
Tests for the dependency graph.
"""

import pytest

from flowci.dag import ancestors, build_dag, expanded_jobs, plan, resolve_needs, topo_levels
from flowci.errors import WorkflowError
from flowci.matrix import expand_jobs
from flowci.model import Job, Step, Strategy, Workflow


def _job(job_id, needs=(), strategy=None):
    return Job(id=job_id, steps=[Step(name="s", run="true")], needs=list(needs), strategy=strategy)


class TestBuildDag:
    """Tests for build_dag and topo_levels."""

    def test_levels(self):
        jobs = [_job("setup"), _job("lint", ["setup"]), _job("unit", ["setup"]), _job("package", ["lint", "unit"])]
        adj, indeg = build_dag(jobs)
        assert topo_levels(adj, indeg) == [["setup"], ["lint", "unit"], ["package"]]

    def test_duplicate_ids(self):
        with pytest.raises(WorkflowError, match="Duplicate"):
            build_dag([_job("a"), _job("a")])

    def test_missing_need(self):
        with pytest.raises(WorkflowError, match="missing job 'ghost'"):
            build_dag([_job("a", ["ghost"])])

    def test_cycle(self):
        adj, indeg = build_dag([_job("a", ["c"]), _job("b", ["a"]), _job("c", ["b"]), _job("d")])
        with pytest.raises(WorkflowError, match="cycle") as exc:
            topo_levels(adj, indeg)
        assert "['a', 'b', 'c']" in str(exc.value)


class TestMatrixNeeds:
    """Tests for needs that point at matrix jobs."""

    def test_needs_every_variant(self):
        jobs = resolve_needs(expand_jobs([_job("test", strategy=Strategy(matrix={"py": ["3.11", "3.12"]})), _job("deploy", ["test"])]))
        deploy = [j for j in jobs if j.id == "deploy"][0]
        assert deploy.needs == ["test-3.11", "test-3.12"]

    def test_plan(self):
        wf = Workflow(
            name="ci",
            jobs=[_job("lint"), _job("test", ["lint"], Strategy(matrix={"py": ["3.11", "3.12"]})), _job("deploy", ["test"])],
        )
        assert plan(wf) == [["lint"], ["test-3.11", "test-3.12"], ["deploy"]]

    def test_ancestors(self):
        wf = Workflow(
            name="ci",
            jobs=[_job("lint"), _job("docs"), _job("test", ["lint"], Strategy(matrix={"py": ["3.11", "3.12"]})), _job("deploy", ["test"])],
        )
        jobs = expanded_jobs(wf)
        assert ancestors(jobs, ["deploy"]) == {"deploy", "test-3.11", "test-3.12", "lint"}
        assert ancestors(jobs, ["test"]) == {"test-3.11", "test-3.12", "lint"}

    def test_ancestors_unknown(self):
        with pytest.raises(WorkflowError, match="Unknown job"):
            ancestors([_job("a")], ["b"])
