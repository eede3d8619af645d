# runner.py
from __future__ import annotations

import logging
import time
from typing import List, Mapping, Optional

from .cache import CacheGate
from .environment import EnvironmentProvisioner, JobEnvironment
from .errors import CacheWriteError, EnvironmentProvisionError, StepCancelled, StepFailure, UnknownActionError
from .executor import CancelToken, StepExecutor
from .model import Event, Job, JobStatus, RunResult, StepOutcome
from .ui.console import Console, get_console

logger = logging.getLogger(__name__)


def _format_logs(outcomes: List[StepOutcome]) -> str:
    parts = []
    for o in outcomes:
        parts.append(f"##[step {o.index + 1}] {o.name} ({o.status.value})\n")
        if o.stdout:
            parts.append(o.stdout if o.stdout.endswith("\n") else o.stdout + "\n")
        if o.stderr:
            parts.append(o.stderr if o.stderr.endswith("\n") else o.stderr + "\n")
        if o.error and o.status is not JobStatus.SUCCESS:
            parts.append(f"##[error] {o.error}\n")
    return "".join(parts)


class JobRunner:
    """
    Runs one job: fresh environment -> cache restore -> steps in order -> cache save.

    The first failing step ends the job (unless the step is marked
    continue-on-error). Cancellation aborts the running step and skips
    both the remaining steps and the cache save.
    """

    def __init__(
        self,
        provisioner: EnvironmentProvisioner,
        *,
        cache: Optional[CacheGate] = None,
        executor: Optional[StepExecutor] = None,
        console: Optional[Console] = None,
    ):
        self.provisioner = provisioner
        self.cache = cache
        self.executor = executor or StepExecutor()
        self.console = console

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    def run(
        self,
        job: Job,
        *,
        event: Optional[Event] = None,
        pipeline_env: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RunResult:
        cancel = cancel or CancelToken()
        started = time.monotonic()
        console = self._console
        console.print_job_start(job.id)

        def finish(status: JobStatus, **kwargs) -> RunResult:
            outcomes = kwargs.pop("steps", [])
            result = RunResult(
                job=job.id,
                status=status,
                steps=tuple(outcomes),
                logs=_format_logs(outcomes),
                duration_s=time.monotonic() - started,
                continue_on_error=job.continue_on_error,
                **kwargs,
            )
            logger.info("job %s finished: %s", job.id, status.value)
            return result

        if cancel.is_set():
            return finish(JobStatus.CANCELLED, error=cancel.reason)

        try:
            env = self.provisioner.acquire(job, event=event, pipeline_env=pipeline_env)
        except EnvironmentProvisionError as e:
            console.print_error(f"Could not provision job {job.id}", e.message)
            return finish(JobStatus.FAILURE, error=str(e))

        try:
            return self._run_in(job, env, cancel, finish)
        finally:
            self.provisioner.release(env)

    def _run_in(self, job: Job, env: JobEnvironment, cancel: CancelToken, finish) -> RunResult:
        console = self._console
        outcomes: List[StepOutcome] = []

        # ---- restore ----
        cache_hit = False
        if self.cache is not None and self.cache.config_for(job) is not None:
            entry = self.cache.restore(job, env)
            cache_hit = entry is not None
            if entry is not None:
                console.print_cache_hit(job.id, entry.key)
            else:
                console.print_cache_miss(job.id)

        # ---- run steps ----
        for index, step in enumerate(job.steps):
            name = step.display_name
            if cancel.is_set():
                return finish(JobStatus.CANCELLED, steps=outcomes, error=cancel.reason, cache_hit=cache_hit)

            console.print_step(job.id, name)
            try:
                out = self.executor.execute(step, env, cancel)
            except StepCancelled as e:
                outcomes.append(
                    StepOutcome(index, name, JobStatus.CANCELLED, None, e.stdout, e.stderr, error=e.reason)
                )
                return finish(JobStatus.CANCELLED, steps=outcomes, error=e.reason, cache_hit=cache_hit)
            except StepFailure as e:
                outcomes.append(
                    StepOutcome(index, name, JobStatus.FAILURE, e.exit_code, e.stdout, e.stderr, error=e.message)
                )
                console.print_step_failure(job.id, name, e.message, e.exit_code, e.stderr or e.stdout)
                if step.continue_on_error:
                    logger.info("[%s] step %r failed but continue-on-error is set", job.id, name)
                    continue
                return finish(
                    JobStatus.FAILURE,
                    steps=outcomes,
                    exit_code=e.exit_code,
                    failed_step=index,
                    error=str(e),
                    cache_hit=cache_hit,
                )
            except UnknownActionError as e:
                outcomes.append(StepOutcome(index, name, JobStatus.FAILURE, None, error=e.message))
                console.print_step_failure(job.id, name, str(e))
                if step.continue_on_error:
                    continue
                return finish(JobStatus.FAILURE, steps=outcomes, failed_step=index, error=str(e), cache_hit=cache_hit)

            outcomes.append(StepOutcome(index, name, JobStatus.SUCCESS, out.exit_code, out.stdout, out.stderr))

        # a cancel that lands after this point is refused
        if not cancel.seal():
            return finish(JobStatus.CANCELLED, steps=outcomes, error=cancel.reason, cache_hit=cache_hit)

        # ---- save ----
        cache_saved = False
        if self.cache is not None:
            try:
                entry = self.cache.snapshot(job, env)
                if entry is not None:
                    self.cache.save(job, entry)
                    cache_saved = True
                    console.print_cache_saved(job.id, entry.key)
            except CacheWriteError as e:
                logger.warning("[%s] cache save failed: %s", job.id, e.message)
                console.print_cache_error(job.id, e.message)

        return finish(JobStatus.SUCCESS, steps=outcomes, exit_code=0, cache_hit=cache_hit, cache_saved=cache_saved)
