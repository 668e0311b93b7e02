from .dsl import job, sh, uses, secret, matrix, pipeline, wf, JobBuilder, build
from .engine import PipelineEngine
from .loader import load_definition
from .model import Job, Step, PipelineDefinition, Trigger, TriggerEvent, RunStatus, JobStatus

__all__ = [
    "job", "sh", "uses", "secret", "matrix", "pipeline", "wf", "JobBuilder", "build",
    "PipelineEngine", "load_definition",
    "Job", "Step", "PipelineDefinition", "Trigger", "TriggerEvent", "RunStatus", "JobStatus",
]
