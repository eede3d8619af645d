# actions.py
# Closed set of reusable step handlers, addressed by name + version.
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .environment import JobEnvironment
from .errors import UnknownActionError
from .model import ActionRef, CacheConfig, Job, ProcessOutput, Step

logger = logging.getLogger(__name__)

# runs argv in the job workspace; raises StepCancelled if the job is cancelled meanwhile
RunProcess = Callable[[List[str]], ProcessOutput]

# never copied into a workspace on checkout
CHECKOUT_IGNORE = {".git", ".pipewright", "__pycache__"}


def _as_list(value: Any) -> List[str]:
    """`with:` values come in as 'a, b', 'a\\nb' or a real list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    parts = str(value).replace(",", "\n").splitlines()
    return [p.strip() for p in parts if p.strip()]


def _tool_version(tool_path: str, run: RunProcess) -> Optional[str]:
    """Best-effort version discovery."""
    for flag in ("--version", "-V"):
        try:
            out = run([tool_path, flag])
        except OSError:
            continue
        text = (out.stdout or out.stderr).strip()
        if out.exit_code == 0 and text:
            return " ".join(text.split())
    return None


class Action:
    """
    Base handler. `versions` is the set of accepted versions; None accepts
    any version (e.g. a toolchain channel like `stable`).
    """
    name: str = ""
    versions: Optional[FrozenSet[str]] = None

    def supports(self, version: str | None) -> bool:
        if self.versions is None or version is None:
            return True
        return version in self.versions

    def run(self, step: Step, env: JobEnvironment, run: RunProcess) -> ProcessOutput:
        raise NotImplementedError


class CheckoutAction(Action):
    """Copies the checkout source into the job workspace (or `with.path` under it)."""
    name = "checkout"
    versions = frozenset({"v1", "v2", "v3", "v4"})

    def run(self, step: Step, env: JobEnvironment, run: RunProcess) -> ProcessOutput:
        if env.source is None or not env.source.is_dir():
            return ProcessOutput(1, "", f"no checkout source available for job {env.job_id}\n")

        target = env.resolve_cwd(step.params.get("path"))
        # the work root may live under the source tree
        work_root = env.workspace.resolve().parent

        def ignore(directory: str, names: List[str]) -> List[str]:
            return [
                n for n in names
                if n in CHECKOUT_IGNORE or (Path(directory) / n).resolve() == work_root
            ]

        shutil.copytree(env.source, target, ignore=ignore, dirs_exist_ok=True, symlinks=True)
        return ProcessOutput(0, f"checked out {env.source} into {target}\n", "")


class ToolchainAction(Action):
    """
    Puts a toolchain's binaries on the job's PATH and records their versions.

    The action version is the channel to install when an installer (rustup)
    is available; otherwise the tools must already exist on the host.
    """
    versions = None

    def __init__(self, name: str, default_tools: List[str], *, installer: str | None = None):
        self.name = name
        self.default_tools = default_tools
        self.installer = installer

    def _install(self, step: Step, env: JobEnvironment, run: RunProcess) -> Optional[ProcessOutput]:
        if self.installer != "rustup":
            return None
        rustup = env.which("rustup")
        if rustup is None:
            return None
        channel = str(step.params.get("toolchain") or (step.uses.version if step.uses else None) or "stable")
        out = run([rustup, "toolchain", "install", channel, "--profile", "minimal", "--no-self-update"])
        if out.exit_code != 0:
            return out
        components = _as_list(step.params.get("components"))
        if components:
            out = run([rustup, "component", "add", "--toolchain", channel, *components])
            if out.exit_code != 0:
                return out
        env.vars["RUSTUP_TOOLCHAIN"] = channel
        return out

    def run(self, step: Step, env: JobEnvironment, run: RunProcess) -> ProcessOutput:
        stdout: List[str] = []
        installed = self._install(step, env, run)
        if installed is not None:
            if installed.exit_code != 0:
                return installed
            stdout.append(installed.stdout)

        tools = _as_list(step.params.get("tools") or step.params.get("tool")) or list(self.default_tools)
        if not tools:
            return ProcessOutput(1, "", f"{self.name}: no tool named (set with.tool)\n")

        for tool in tools:
            path = env.which(tool)
            if path is None:
                return ProcessOutput(127, "".join(stdout), f"{tool} is not available on PATH\n")
            env.add_path(Path(path).parent)
            version = _tool_version(path, run) or "unknown"
            env.toolchains[tool] = version
            stdout.append(f"{tool}: {version}\n")
        return ProcessOutput(0, "".join(stdout), "")


class CacheAction(Action):
    """
    Marks the job as cached. Restore and save are done by the job runner's
    cache gate around the whole step sequence, so the step itself is a no-op.
    """

    def __init__(self, name: str, *, default_paths: List[str], versions: Optional[FrozenSet[str]] = None):
        self.name = name
        self.default_paths = default_paths
        self.versions = versions

    def cache_config(self, step: Step) -> CacheConfig:
        paths = _as_list(step.params.get("path") or step.params.get("paths")) or list(self.default_paths)
        key = step.params.get("key")
        return CacheConfig(key=str(key) if key is not None else None, paths=tuple(paths))

    def run(self, step: Step, env: JobEnvironment, run: RunProcess) -> ProcessOutput:
        return ProcessOutput(0, f"cache for {env.job_id} is managed by the job runner\n", "")


REGISTRY: Dict[str, Action] = {}


def register(action: Action, *aliases: str) -> None:
    for name in (action.name, *aliases):
        REGISTRY[name] = action


register(CheckoutAction(), "actions/checkout")
register(ToolchainAction("setup-toolchain", []))
register(ToolchainAction("dtolnay/rust-toolchain", ["cargo", "rustc"], installer="rustup"))
register(ToolchainAction("actions/setup-python", ["python3"]))
register(CacheAction("cache", default_paths=[]))
register(CacheAction("actions/cache", default_paths=[], versions=frozenset({"v3", "v4"})))
register(CacheAction("Swatinem/rust-cache", default_paths=["target"], versions=frozenset({"v1", "v2"})))


def resolve(ref: ActionRef, *, job: str = "", step: str | None = None) -> Action:
    action = REGISTRY.get(ref.name)
    if action is None or not action.supports(ref.version):
        raise UnknownActionError(job, step, str(ref), known=sorted(REGISTRY))
    return action


def job_cache_config(job: Job) -> Optional[CacheConfig]:
    """Explicit `cache:` block wins; otherwise the first cache action step configures caching."""
    if job.cache is not None:
        return job.cache
    for step in job.steps:
        if step.uses is None:
            continue
        action = REGISTRY.get(step.uses.name)
        if isinstance(action, CacheAction):
            return action.cache_config(step)
    return None
