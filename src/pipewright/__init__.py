from .dsl import job, sh, uses, matrix, wf, workflow, pipeline, JobBuilder, build
from .declaration import load_declaration, loads, dumps
from .model import Event, Job, JobStatus, Pipeline, PipelineResult, PipelineState, RunResult, Step
from .runner import JobRunner
from .scheduler import PipelineScheduler

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "workflow", "pipeline", "JobBuilder", "build",
    "load_declaration", "loads", "dumps",
    "Event", "Job", "JobStatus", "Pipeline", "PipelineResult", "PipelineState", "RunResult", "Step",
    "JobRunner", "PipelineScheduler",
]
