from .dsl import job, sh, uses, matrix, notify, workflow, wf, JobBuilder, build
from .loader import load_workflow
from .runner import run_workflow
from .model import Job, Step, Workflow

__all__ = [
    "job",
    "sh",
    "uses",
    "matrix",
    "notify",
    "workflow",
    "wf",
    "JobBuilder",
    "build",
    "load_workflow",
    "run_workflow",
    "Job",
    "Step",
    "Workflow",
]
