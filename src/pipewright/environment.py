# environment.py
from __future__ import annotations

import logging
import os
import platform
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import EnvironmentProvisionError
from .model import Event, Job

logger = logging.getLogger(__name__)

# runs-on label prefix -> runner.os value it requires
_LABEL_OS = {
    "ubuntu": "Linux",
    "linux": "Linux",
    "macos": "macOS",
    "windows": "Windows",
}
# labels that accept whatever host we're on
_ANY_HOST_LABELS = {"local", "self-hosted"}


def host_runner_os() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system)


def label_runner_os(label: str) -> Optional[str]:
    """OS required by a runs-on label, or None if the label runs anywhere."""
    label = label.strip().lower()
    if label in _ANY_HOST_LABELS:
        return None
    prefix = label.split("-", 1)[0]
    if prefix not in _LABEL_OS:
        raise KeyError(label)
    return _LABEL_OS[prefix]


@dataclass
class JobEnvironment:
    """
    One job's isolated execution environment.

    Everything a step may mutate (variables, PATH entries, installed
    toolchains) lives here and dies with the job.
    """
    job_id: str
    workspace: Path
    source: Optional[Path]
    runner_os: str
    vars: Dict[str, str] = field(default_factory=dict)
    path_entries: List[str] = field(default_factory=list)
    toolchains: Dict[str, str] = field(default_factory=dict)
    event: Optional[Event] = None

    def add_path(self, directory: str | Path) -> None:
        directory = str(directory)
        if directory in self.path_entries:
            self.path_entries.remove(directory)
        self.path_entries.insert(0, directory)

    def search_path(self) -> str:
        parts = list(self.path_entries)
        inherited = self.vars.get("PATH", "")
        if inherited:
            parts.append(inherited)
        return os.pathsep.join(parts)

    def process_env(self, overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Variables for a spawned process; step-level overrides win."""
        env = dict(self.vars)
        env["PATH"] = self.search_path()
        if overrides:
            env.update({k: str(v) for k, v in overrides.items()})
        return env

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool, path=self.search_path())

    def resolve_cwd(self, working_directory: str | None) -> Path:
        cwd = (self.workspace / (working_directory or ".")).resolve()
        if not cwd.is_relative_to(self.workspace.resolve()):
            raise ValueError(f"working-directory escapes the workspace: {working_directory}")
        return cwd


class EnvironmentProvisioner:
    """
    Hands out fresh workspaces under `work_root`, one per job run.
    """

    def __init__(
        self,
        work_root: str | Path,
        *,
        source: str | Path | None = None,
        base_env: Optional[Mapping[str, str]] = None,
        keep_workspaces: bool = False,
    ):
        self.work_root = Path(work_root).resolve()
        self.source = Path(source).resolve() if source is not None else None
        self.base_env = dict(base_env) if base_env is not None else None
        self.keep_workspaces = keep_workspaces
        self.runner_os = host_runner_os()

    def acquire(
        self,
        job: Job,
        *,
        event: Optional[Event] = None,
        pipeline_env: Optional[Mapping[str, str]] = None,
    ) -> JobEnvironment:
        try:
            required = label_runner_os(job.runs_on)
        except KeyError:
            raise EnvironmentProvisionError(job.id, f"unknown runs-on label {job.runs_on!r}") from None
        if required is not None and required != self.runner_os:
            raise EnvironmentProvisionError(
                job.id,
                f"runs-on {job.runs_on!r} needs a {required} host, this host is {self.runner_os}",
            )

        try:
            self.work_root.mkdir(parents=True, exist_ok=True)
            workspace = Path(tempfile.mkdtemp(prefix=f"{job.id}-", dir=self.work_root))
        except OSError as e:
            raise EnvironmentProvisionError(job.id, f"could not allocate workspace: {e}", work_root=str(self.work_root))

        base = dict(os.environ) if self.base_env is None else dict(self.base_env)
        base.update(
            {
                "CI": "true",
                "PIPEWRIGHT_JOB": job.id,
                "PIPEWRIGHT_WORKSPACE": str(workspace),
                "RUNNER_OS": self.runner_os,
            }
        )
        if event is not None:
            base.update(
                {
                    "PIPEWRIGHT_REF": event.ref,
                    "PIPEWRIGHT_SHA": event.sha,
                    "PIPEWRIGHT_EVENT": event.kind,
                }
            )
        base.update(pipeline_env or {})
        base.update(job.env)

        logger.debug("provisioned workspace %s for job %s", workspace, job.id)
        return JobEnvironment(
            job_id=job.id,
            workspace=workspace,
            source=self.source,
            runner_os=self.runner_os,
            vars=base,
            event=event,
        )

    def release(self, env: JobEnvironment) -> None:
        if self.keep_workspaces:
            logger.info("keeping workspace %s for job %s", env.workspace, env.job_id)
            return
        shutil.rmtree(env.workspace, ignore_errors=True)
        if env.workspace.exists():
            logger.warning("could not fully remove workspace %s", env.workspace)
