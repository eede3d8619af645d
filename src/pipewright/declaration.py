# declaration.py
from __future__ import annotations

import runpy
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import DeclarationError
from .expressions import validate as validate_expression
from .model import EVENT_KINDS, ActionRef, CacheConfig, Job, Pipeline, Step

PIPELINE_KEYS = {"name", "on", "env", "jobs"}
JOB_KEYS = {"name", "runs-on", "env", "steps", "timeout-minutes", "continue-on-error", "cache"}
STEP_KEYS = {"name", "id", "uses", "with", "run", "env", "working-directory", "continue-on-error"}


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def _expect_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise DeclarationError(f"expected a mapping, got {type(value).__name__}", location=where)
    return dict(value)


def _check_keys(data: Mapping, allowed: set, where: str) -> None:
    unknown = sorted(str(k) for k in data if k not in allowed)
    if not unknown:
        return
    if "needs" in unknown:
        raise DeclarationError(
            "jobs are independent; 'needs' dependencies are not supported", location=where
        )
    raise DeclarationError(f"unknown key(s) {unknown}; allowed: {sorted(allowed)}", location=where)


def _env(value: Any, where: str) -> Dict[str, str]:
    env = _expect_mapping(value, where)
    return {str(k): "" if v is None else str(v) for k, v in env.items()}


def _bool(value: Any, where: str) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise DeclarationError(f"expected true/false, got {value!r}", location=where)
    return value


def _triggers(value: Any) -> Dict[str, Optional[Dict[str, Any]]]:
    if value is None:
        raise DeclarationError("missing 'on' (which events trigger the pipeline)", location="on")
    if isinstance(value, str):
        kinds: Dict[str, Any] = {value: None}
    elif isinstance(value, list):
        kinds = {str(v): None for v in value}
    elif isinstance(value, Mapping):
        kinds = {str(k): (dict(v) if isinstance(v, Mapping) else None) for k, v in value.items()}
    else:
        raise DeclarationError(f"'on' must be a string, list or mapping, got {type(value).__name__}", location="on")

    unknown = sorted(k for k in kinds if k not in EVENT_KINDS)
    if unknown:
        raise DeclarationError(f"unsupported event kind(s) {unknown}; expected {list(EVENT_KINDS)}", location="on")
    return kinds


def _parse_step(raw: Any, where: str) -> Step:
    data = _expect_mapping(raw, where)
    _check_keys(data, STEP_KEYS, where)

    uses = data.get("uses")
    run = data.get("run")
    if uses is not None and not isinstance(uses, str):
        raise DeclarationError("'uses' must be a string like owner/name@version", location=where)
    if run is not None and not isinstance(run, str):
        raise DeclarationError("'run' must be a string", location=where)

    return Step(
        name=str(data["name"]) if data.get("name") is not None else None,
        id=str(data["id"]) if data.get("id") is not None else None,
        uses=ActionRef.parse(uses) if uses is not None else None,
        params=_expect_mapping(data.get("with"), f"{where}.with"),
        run=run,
        env=_env(data.get("env"), f"{where}.env"),
        working_directory=data.get("working-directory"),
        continue_on_error=_bool(data.get("continue-on-error"), f"{where}.continue-on-error"),
    )


def _parse_cache(raw: Any, where: str) -> Optional[CacheConfig]:
    if raw is None:
        return None
    data = _expect_mapping(raw, where)
    _check_keys(data, {"key", "paths"}, where)
    paths = data.get("paths") or []
    if isinstance(paths, str):
        paths = [paths]
    key = data.get("key")
    if key is not None:
        validate_expression(str(key))
    return CacheConfig(key=str(key) if key is not None else None, paths=tuple(str(p) for p in paths))


def _parse_job(job_id: str, raw: Any) -> Job:
    where = f"jobs.{job_id}"
    data = _expect_mapping(raw, where)
    _check_keys(data, JOB_KEYS, where)

    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise DeclarationError("a job needs a non-empty 'steps' list", location=where)

    runs_on = data.get("runs-on", "ubuntu-latest")
    if not isinstance(runs_on, str):
        raise DeclarationError("'runs-on' must be a single label", location=f"{where}.runs-on")

    timeout = data.get("timeout-minutes")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float))):
        raise DeclarationError("'timeout-minutes' must be a number", location=f"{where}.timeout-minutes")

    try:
        steps = [_parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(steps_raw)]
        job = Job(
            id=job_id,
            name=str(data["name"]) if data.get("name") is not None else None,
            runs_on=runs_on,
            env=_env(data.get("env"), f"{where}.env"),
            steps=steps,
            cache=_parse_cache(data.get("cache"), f"{where}.cache"),
            timeout_minutes=timeout,
            continue_on_error=_bool(data.get("continue-on-error"), f"{where}.continue-on-error"),
        )
    except DeclarationError as e:
        if e.location is None:
            e.location = where
            e.details["location"] = where
        raise

    for step in job.steps:
        key = step.params.get("key")
        if step.uses is not None and key is not None:
            validate_expression(str(key))
    return job


def parse_declaration(data: Any) -> Pipeline:
    """Build a Pipeline from an already-decoded YAML document."""
    doc = _expect_mapping(data, "<root>")
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in doc:
        doc["on"] = doc.pop(True)
    _check_keys(doc, PIPELINE_KEYS, "<root>")

    jobs_raw = _expect_mapping(doc.get("jobs"), "jobs")
    if not jobs_raw:
        raise DeclarationError("a pipeline needs at least one job", location="jobs")

    return Pipeline(
        name=str(doc["name"]) if doc.get("name") is not None else None,
        triggers=_triggers(doc.get("on")),
        env=_env(doc.get("env"), "env"),
        jobs=[_parse_job(str(job_id), raw) for job_id, raw in jobs_raw.items()],
    )


def loads(text: str) -> Pipeline:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise DeclarationError(f"Invalid YAML: {exc}") from exc
    return parse_declaration(data)


# ----------------------------------------------------------------------
# Serializing
# ----------------------------------------------------------------------

def _step_to_dict(step: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if step.name is not None:
        out["name"] = step.name
    if step.id is not None:
        out["id"] = step.id
    if step.uses is not None:
        out["uses"] = str(step.uses)
        if step.params:
            out["with"] = dict(step.params)
    if step.working_directory is not None:
        out["working-directory"] = step.working_directory
    if step.continue_on_error:
        out["continue-on-error"] = True
    if step.env:
        out["env"] = dict(step.env)
    if step.run is not None:
        out["run"] = step.run
    return out


def _job_to_dict(job: Job) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if job.name is not None:
        out["name"] = job.name
    out["runs-on"] = job.runs_on
    if job.timeout_minutes is not None:
        out["timeout-minutes"] = job.timeout_minutes
    if job.continue_on_error:
        out["continue-on-error"] = True
    if job.env:
        out["env"] = dict(job.env)
    if job.cache is not None:
        cache: Dict[str, Any] = {}
        if job.cache.key is not None:
            cache["key"] = job.cache.key
        cache["paths"] = list(job.cache.paths)
        out["cache"] = cache
    out["steps"] = [_step_to_dict(s) for s in job.steps]
    return out


def to_dict(pipeline: Pipeline) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if pipeline.name is not None:
        out["name"] = pipeline.name
    if all(v is None for v in pipeline.triggers.values()):
        out["on"] = list(pipeline.triggers)
    else:
        out["on"] = {k: (dict(v) if v is not None else None) for k, v in pipeline.triggers.items()}
    if pipeline.env:
        out["env"] = dict(pipeline.env)
    out["jobs"] = {job.id: _job_to_dict(job) for job in pipeline.jobs}
    return out


def dumps(pipeline: Pipeline) -> str:
    """Serialize back to YAML, keeping job order, step order and every parameter."""
    return yaml.safe_dump(to_dict(pipeline), sort_keys=False, default_flow_style=False, allow_unicode=True)


# ----------------------------------------------------------------------
# Workflow loading (YAML file or Python module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - workflow() -> Pipeline | List[Job]
      - JOBS = [Job, ...] (or a Pipeline)
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"pipewright_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from pipewright import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]
    else:
        raise DeclarationError(f"{wf_path.name} defines neither workflow() nor JOBS")

    if isinstance(jobs, Pipeline):
        return jobs
    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise DeclarationError(
            "Workflow must return/define a Pipeline or List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return Pipeline(jobs=jobs, name=wf_path.stem)


def load_declaration(path: str | Path) -> Pipeline:
    """Load a .yml/.yaml declaration or a .py workflow file."""
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Declaration file not found: {p}")
    if p.suffix == ".py":
        return load_workflow(p)
    if p.suffix not in (".yml", ".yaml"):
        raise DeclarationError(f"Declaration must be a .yml, .yaml or .py file, got: {p.name}")
    with open(p, "r", encoding="utf-8") as handle:
        return loads(handle.read())
