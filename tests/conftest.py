"""
Shared fixtures: a small checkout source, an in-memory cache and a job
runner wired the way the CLI wires it, with short timings.
"""

import os
import textwrap
from pathlib import Path

import pytest

from pipewright.cache import CacheGate, MemoryCacheStorage
from pipewright.environment import EnvironmentProvisioner, JobEnvironment, host_runner_os
from pipewright.executor import StepExecutor
from pipewright.runner import JobRunner
from pipewright.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console


@pytest.fixture
def source(tmp_path: Path) -> Path:
    src = tmp_path / "repo"
    src.mkdir()
    (src / "Cargo.lock").write_text("lock v1\n", encoding="utf-8")
    (src / "README.md").write_text("hello\n", encoding="utf-8")
    (src / ".git").mkdir()
    (src / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    return src


@pytest.fixture
def storage() -> MemoryCacheStorage:
    return MemoryCacheStorage()


@pytest.fixture
def gate(storage) -> CacheGate:
    return CacheGate(storage)


@pytest.fixture
def provisioner(tmp_path: Path, source: Path) -> EnvironmentProvisioner:
    return EnvironmentProvisioner(tmp_path / "work", source=source)


@pytest.fixture
def executor() -> StepExecutor:
    return StepExecutor(grace_period_s=1.0, poll_interval_s=0.02)


@pytest.fixture
def runner(provisioner, gate, executor) -> JobRunner:
    return JobRunner(provisioner, cache=gate, executor=executor)


@pytest.fixture
def make_env(tmp_path: Path, source: Path):
    def _make(job_id: str = "unit", **vars) -> JobEnvironment:
        workspace = tmp_path / f"ws-{job_id}"
        workspace.mkdir(exist_ok=True)
        env_vars = dict(os.environ)
        env_vars.update(vars)
        return JobEnvironment(
            job_id=job_id,
            workspace=workspace,
            source=source,
            runner_os=host_runner_os(),
            vars=env_vars,
        )

    return _make


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    """A directory holding an executable `mytool` that reports a version."""
    bindir = tmp_path / "toolbin"
    bindir.mkdir()
    tool = bindir / "mytool"
    tool.write_text(
        textwrap.dedent(
            """\
            #!/bin/sh
            echo "mytool 1.2.3"
            """
        ),
        encoding="utf-8",
    )
    tool.chmod(0o755)
    return bindir


@pytest.fixture
def make_job():
    """dsl.job() pinned to the `local` runner label so tests run on any host."""
    from pipewright.dsl import job

    def _make(job_id, *steps, **kwargs):
        kwargs.setdefault("runs_on", "local")
        return job(job_id, *steps, **kwargs)

    return _make
