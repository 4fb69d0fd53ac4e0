from .dsl import job, sh, uses, wf, workflow
from .loader import load_workflow, parse_workflow
from .model import Job, JobInstance, JobStatus, Step, Workflow
from .runs import Run, RunSupervisor, run_workflow
from .triggers import Event

__all__ = [
    "job",
    "sh",
    "uses",
    "wf",
    "workflow",
    "load_workflow",
    "parse_workflow",
    "Job",
    "JobInstance",
    "JobStatus",
    "Step",
    "Workflow",
    "Run",
    "RunSupervisor",
    "run_workflow",
    "Event",
]
