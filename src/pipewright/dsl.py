# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import ActionRef, CacheConfig, Job, Pipeline, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        working_directory=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
    )


def uses(ref: str, *, name: str | None = None, env: Optional[Dict[str, str]] = None, **params: Any) -> Step:
    """
    Create an action step.

        uses("actions/checkout@v4")
        uses("dtolnay/rust-toolchain@stable", components="clippy")
    """
    return Step(
        name=name,
        uses=ActionRef.parse(ref),
        params=dict(params),
        env={k: str(v) for k, v in (env or {}).items()},
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    job_id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: str | None = None,
    runs_on: str = "ubuntu-latest",
    env: Optional[Dict[str, str]] = None,
    timeout_minutes: float | None = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default working directory for steps missing one
    cache_key: str | None = None,
    cache_paths: Optional[List[str]] = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({job_id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None or s.uses is not None else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    cache = None
    if cache_key is not None or cache_paths is not None:
        cache = CacheConfig(key=cache_key, paths=tuple(cache_paths or ()))

    return Job(
        id=job_id,
        steps=steps_final,
        name=name,
        runs_on=runs_on,
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
        timeout_minutes=timeout_minutes,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self._name: str | None = None
        self._runs_on = "ubuntu-latest"
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._timeout_minutes: float | None = None
        self._continue_on_error = False
        self._cache: Optional[CacheConfig] = None

    def named(self, name: str):
        self._name = name
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **env: Any):
        self._steps.append(sh(name, run, cwd=cwd, env=env))
        return self

    def use_action(self, ref: str, name: str | None = None, **params: Any):
        self._steps.append(uses(ref, name=name, **params))
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, minutes: float):
        self._timeout_minutes = minutes
        return self

    def allow_failure(self, allowed: bool = True):
        self._continue_on_error = allowed
        return self

    def cache(self, *paths: str, key: str | None = None):
        self._cache = CacheConfig(key=key, paths=tuple(paths))
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.job_id}' has no steps")

        return Job(
            id=self.job_id,
            steps=list(self._steps),
            name=self._name,
            runs_on=self._runs_on,
            env=dict(self._env),
            cache=self._cache,
            timeout_minutes=self._timeout_minutes,
            continue_on_error=self._continue_on_error,
        )


def build(job_id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(job_id)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "beta"]).jobs(
            lambda v: job(f"test-{v}", uses(f"dtolnay/rust-toolchain@{v}"), sh("Test", "cargo test"))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Matrix expansions (lists) are flattened.

        from pipewright import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out


def pipeline(
    *jobs: Job | List[Job],
    name: str | None = None,
    on: Iterable[str] = ("push", "pull_request"),
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """Like wf(), but with the pipeline-level triggers and env."""
    return Pipeline(
        jobs=wf(*jobs),
        name=name,
        triggers={kind: None for kind in on},
        env={k: str(v) for k, v in (env or {}).items()},
    )


workflow = wf  # alias; avoid naming your own function workflow if you import it
