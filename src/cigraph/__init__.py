from .dsl import job, sh, pipeline, on_push, on_pull_request
from .loader import load_workflow
from .model import Event, EventKind, Outcome, Pipeline, Step, JobTemplate
from .runner import plan_pipeline, run_pipeline

__all__ = [
    "job",
    "sh",
    "pipeline",
    "on_push",
    "on_pull_request",
    "load_workflow",
    "Event",
    "EventKind",
    "Outcome",
    "Pipeline",
    "Step",
    "JobTemplate",
    "plan_pipeline",
    "run_pipeline",
]
