# python_workflow.py
# The same kind of pipeline written with the Python DSL:
#   flowci run examples/python_workflow.py
from __future__ import annotations

from flowci import build, job, matrix, notify, sh, uses, wf


def workflow():
    lint = (
        build("lint")
        .named("Lint")
        .define_step("Ruff check", "ruff check src || echo 'ruff not installed'")
        .with_inputs("src/**", "pyproject.toml")
        .with_paths("src/**", "pyproject.toml")
        .cache_dirs(".ruff_cache")
        .cache_behavior(keep=5)
        .build()
    )

    test = job(
        "test",
        sh("Pytest", "python -m pytest -q tests/test_${{ matrix.module }}.py"),
        needs=["lint"],
        matrix=matrix(module=["loader", "runner", "cli"], fail_fast=False, max_parallel=2),
        env={"PYTHONDONTWRITEBYTECODE": 1},
    )

    package = job(
        "package",
        sh("Build", "mkdir -p dist && tar czf dist/src.tar.gz src", id="build"),
        uses("upload-artifact", with_={"name": "dist", "path": "dist/"}),
        needs=["test"],
        notifications=[notify("console", on="always")],
    )

    return wf(
        "flowci-python",
        lint,
        test,
        package,
        on={"push": {"branches": ["main"]}, "workflow_dispatch": None},
    )
