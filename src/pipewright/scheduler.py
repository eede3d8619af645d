# scheduler.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from .errors import TriggerMismatch
from .executor import DEFAULT_GRACE_PERIOD_S, CancelToken
from .model import Event, Job, JobStatus, Pipeline, PipelineResult, PipelineState, RunResult
from .runner import JobRunner
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)

DEFAULT_JOB_TIMEOUT_S = 360 * 60


class PipelineScheduler:
    """
    Fans out one job runner per job, all in parallel (jobs are independent).

    Pending -> Running -> {Succeeded, Failed}. The pipeline is Failed as
    soon as one job fails, but run() still waits for every job to reach a
    terminal state and reports all of them. A job past its deadline is
    signalled to cancel; one that hasn't stopped a grace period later is
    recorded as Cancelled and abandoned. A job's deadline starts when its
    runner starts, not while it waits for a free worker.

    With fail_fast=True the first failure also cancels the jobs still running.
    """

    def __init__(
        self,
        runner: JobRunner,
        *,
        job_timeout_s: float = DEFAULT_JOB_TIMEOUT_S,
        grace_period_s: float = DEFAULT_GRACE_PERIOD_S,
        fail_fast: bool = False,
        max_workers: int | None = None,
        poll_interval_s: float = 0.25,
        console: Optional[Console] = None,
    ):
        self.runner = runner
        self.job_timeout_s = job_timeout_s
        self.grace_period_s = grace_period_s
        self.fail_fast = fail_fast
        self.max_workers = max_workers
        self.poll_interval_s = poll_interval_s
        self.console = console
        self.state = PipelineState.PENDING
        self._cancel_requested = threading.Event()
        self._cancel_reason = "pipeline cancelled"

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    def cancel(self, reason: str = "pipeline cancelled") -> None:
        """Signal every still-running job to cancel. Safe to call from any thread."""
        self._cancel_reason = reason
        self._cancel_requested.set()

    def timeout_for(self, job: Job) -> float:
        if job.timeout_minutes is not None:
            return job.timeout_minutes * 60
        return self.job_timeout_s

    def run(self, pipeline: Pipeline, event: Event, *, jobs: Optional[List[str]] = None) -> PipelineResult:
        if not pipeline.accepts(event):
            raise TriggerMismatch(event.kind, list(pipeline.triggers))

        selected = pipeline.select(jobs)
        self.state = PipelineState.PENDING
        tokens: Dict[str, CancelToken] = {j.id: CancelToken() for j in selected}
        results: Dict[str, RunResult] = {}
        # job id -> monotonic time after which a cancelled job is given up on
        give_up_at: Dict[str, float] = {}
        # job id -> monotonic time its runner actually started; queued jobs have no deadline yet
        started_at: Dict[str, float] = {}

        def signal(job_id: str, reason: str) -> None:
            if job_id in give_up_at:
                return
            if tokens[job_id].cancel(reason):
                logger.info("cancelling job %s: %s", job_id, reason)
                give_up_at[job_id] = time.monotonic() + self.grace_period_s + max(1.0, self.poll_interval_s * 4)

        workers = self.max_workers or max(1, len(selected))

        def run_job(job: Job) -> RunResult:
            started_at[job.id] = time.monotonic()
            return self.runner.run(job, event=event, pipeline_env=pipeline.env, cancel=tokens[job.id])

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipewright-job")
        try:
            self.state = PipelineState.RUNNING
            started = time.monotonic()
            futures: Dict[Future, Job] = {pool.submit(run_job, job): job for job in selected}
            pending = set(futures)

            while pending:
                done, pending = wait(pending, timeout=self.poll_interval_s, return_when=FIRST_COMPLETED)

                for fut in done:
                    job = futures[fut]
                    try:
                        result = fut.result()
                    except Exception as e:
                        logger.exception("job runner crashed for %s", job.id)
                        result = RunResult(
                            job=job.id,
                            status=JobStatus.FAILURE,
                            error=f"{type(e).__name__}: {e}",
                            continue_on_error=job.continue_on_error,
                        )
                    results[job.id] = result
                    self._console.print_job_finished(result)

                    if result.status is JobStatus.FAILURE and not job.continue_on_error:
                        if self.state is PipelineState.RUNNING:
                            logger.info("pipeline failed: job %s failed", job.id)
                        self.state = PipelineState.FAILED
                        if self.fail_fast:
                            for other in pending:
                                signal(futures[other].id, f"cancelled: job {job.id} failed")

                now = time.monotonic()
                if self._cancel_requested.is_set():
                    for fut in pending:
                        signal(futures[fut].id, self._cancel_reason)

                abandoned = set()
                for fut in pending:
                    job = futures[fut]
                    running_since = started_at.get(job.id)
                    if job.id not in give_up_at and running_since is not None and now >= running_since + self.timeout_for(job):
                        signal(job.id, f"timed out after {self.timeout_for(job):.0f}s")
                    elif job.id in give_up_at and now >= give_up_at[job.id]:
                        logger.warning("job %s did not stop within the grace period, abandoning it", job.id)
                        results[job.id] = RunResult(
                            job=job.id,
                            status=JobStatus.CANCELLED,
                            error=f"{tokens[job.id].reason}; did not stop within {self.grace_period_s:.0f}s",
                            duration_s=now - started_at.get(job.id, started),
                            continue_on_error=job.continue_on_error,
                        )
                        self._console.print_job_finished(results[job.id])
                        abandoned.add(fut)
                pending -= abandoned
        finally:
            # also reached on KeyboardInterrupt: stop whatever is still running
            for token in tokens.values():
                token.cancel("pipeline interrupted")
            pool.shutdown(wait=False, cancel_futures=True)

        ordered = tuple(results[j.id] for j in selected)
        accepted = all(
            r.status is JobStatus.SUCCESS or (job.continue_on_error and r.status is JobStatus.FAILURE)
            for r, job in zip(ordered, selected)
        )
        self.state = PipelineState.SUCCEEDED if accepted else PipelineState.FAILED
        return PipelineResult(state=self.state, results=ordered)
