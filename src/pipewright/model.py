# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from .errors import DeclarationError

EVENT_KINDS = ("push", "pull_request", "workflow_dispatch")
_JOB_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


@dataclass(frozen=True)
class ActionRef:
    """A reusable action addressed by name + version, e.g. actions/checkout@v3."""
    name: str
    version: str | None = None

    @classmethod
    def parse(cls, ref: str) -> ActionRef:
        ref = ref.strip()
        if not ref:
            raise DeclarationError("empty action reference")
        name, sep, version = ref.partition("@")
        if sep and not version:
            raise DeclarationError(f"action reference {ref!r} has an empty version")
        return cls(name=name, version=version or None)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


@dataclass(frozen=True)
class Step:
    """
    One unit of work inside a job: either an action reference (`uses`)
    or an inline shell command (`run`). Exactly one of the two is set.
    """
    name: str | None = None
    run: str | None = None
    uses: ActionRef | None = None
    params: Dict[str, Any] = field(default_factory=dict)   # `with:` block
    env: Dict[str, str] = field(default_factory=dict)
    id: str | None = None
    working_directory: str | None = None
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise DeclarationError(
                f"step {self.name or self.id or '<unnamed>'!r} must set exactly one of 'run' or 'uses'"
            )
        if self.params and self.uses is None:
            raise DeclarationError(f"step {self.name or '<unnamed>'!r} has 'with' parameters but no 'uses'")

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses is not None:
            return str(self.uses)
        first_line = (self.run or "").strip().splitlines()[0] if (self.run or "").strip() else ""
        return f"Run {first_line}"


@dataclass(frozen=True)
class CacheConfig:
    """Explicit job cache block: key template + paths (relative to the workspace)."""
    key: str | None = None
    paths: Tuple[str, ...] = ()


@dataclass
class Job:
    """
    A CI job: ordered steps executed in one isolated environment.
    """
    id: str
    steps: List[Step]
    name: str | None = None
    runs_on: str = "ubuntu-latest"
    env: Dict[str, str] = field(default_factory=dict)
    cache: Optional[CacheConfig] = None
    timeout_minutes: float | None = None
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if not _JOB_ID.match(self.id or ""):
            raise DeclarationError(
                f"invalid job id {self.id!r}: use letters, digits, '-' and '_', starting with a letter or '_'"
            )
        if not self.steps:
            raise DeclarationError(f"job {self.id!r} must have at least one step", location=f"jobs.{self.id}")
        if self.timeout_minutes is not None and self.timeout_minutes <= 0:
            raise DeclarationError(
                f"job {self.id!r} timeout-minutes must be positive", location=f"jobs.{self.id}"
            )

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class Pipeline:
    """
    A set of independent jobs and the event kinds that trigger them.

    `triggers` maps event kind -> optional filter mapping (e.g. {"branches": ["main"]}).
    """
    jobs: List[Job]
    name: str | None = None
    triggers: Dict[str, Optional[Dict[str, Any]]] = field(
        default_factory=lambda: {"push": None, "pull_request": None}
    )
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ids = [j.id for j in self.jobs]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise DeclarationError(f"Duplicate job ids found: {dupes}")

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def select(self, job_ids: Optional[List[str]] = None) -> List[Job]:
        """Jobs to run, in declaration order. Names may be job ids or display names."""
        if not job_ids:
            return list(self.jobs)
        wanted = set(job_ids)
        known = {j.id for j in self.jobs} | {j.display_name for j in self.jobs}
        missing = sorted(wanted - known)
        if missing:
            raise DeclarationError(
                f"unknown job(s) {missing}. Known jobs: {[j.id for j in self.jobs]}"
            )
        return [j for j in self.jobs if j.id in wanted or j.display_name in wanted]

    def accepts(self, event: Event) -> bool:
        if event.kind not in self.triggers:
            return False
        filters = self.triggers.get(event.kind) or {}
        branches = filters.get("branches")
        if not branches:
            return True
        branch = event.ref
        for prefix in ("refs/heads/", "refs/tags/"):
            if branch.startswith(prefix):
                branch = branch[len(prefix):]
                break
        return any(fnmatch(branch, pattern) for pattern in branches)


@dataclass(frozen=True)
class Event:
    """The repository event that starts a pipeline run."""
    ref: str
    sha: str
    kind: str = "push"

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"unsupported event kind {self.kind!r}; expected one of {EVENT_KINDS}")


class ProcessOutput(NamedTuple):
    exit_code: int
    stdout: str
    stderr: str


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    index: int
    name: str
    status: JobStatus
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None


@dataclass(frozen=True)
class RunResult:
    """Per-job outcome. Immutable once the job runner hands it back."""
    job: str
    status: JobStatus
    exit_code: int | None = None
    logs: str = ""
    failed_step: int | None = None
    steps: Tuple[StepOutcome, ...] = ()
    error: str | None = None
    cache_hit: bool = False
    cache_saved: bool = False
    duration_s: float = 0.0
    continue_on_error: bool = False   # a Failure here does not fail the pipeline

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def tolerated(self) -> bool:
        """Failed, but the job is marked continue-on-error."""
        return self.status is JobStatus.FAILURE and self.continue_on_error

    @property
    def failed_step_name(self) -> str | None:
        if self.failed_step is None:
            return None
        for outcome in self.steps:
            if outcome.index == self.failed_step:
                return outcome.name
        return None


@dataclass(frozen=True)
class PipelineResult:
    state: PipelineState
    results: Tuple[RunResult, ...]

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.SUCCEEDED

    @property
    def failed_jobs(self) -> List[str]:
        """Jobs that made the pipeline fail. Tolerated failures are not listed."""
        return [r.job for r in self.results if not r.ok and not r.tolerated]

    @property
    def tolerated_failures(self) -> List[str]:
        return [r.job for r in self.results if r.tolerated]

    def result(self, job_id: str) -> RunResult:
        for r in self.results:
            if r.job == job_id:
                return r
        raise KeyError(job_id)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
