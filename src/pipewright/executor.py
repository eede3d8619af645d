# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import IO, Dict, List, Optional

from . import actions
from .environment import JobEnvironment
from .errors import StepCancelled, StepFailure
from .model import ProcessOutput, Step

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_S = 10.0

_POSIX = os.name == "posix"


class CancelToken:
    """
    Cancellation signal shared by the scheduler, a job runner and its executor.

    Once the job seals the token (it is about to report success) a late
    cancel() is refused, so a job never succeeds after a cancel reached it.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._sealed = False
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> bool:
        with self._lock:
            if self._sealed or self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    def seal(self) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._sealed = True
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


def _read(f: IO[bytes]) -> str:
    f.seek(0)
    return f.read().decode("utf-8", errors="replace")


class StepExecutor:
    """
    Runs a single step inside a job environment.

    Command steps go through the environment's shell; action steps are
    resolved through the closed action registry. Returns the process
    output on success, raises StepFailure on a non-zero exit.
    """

    def __init__(self, *, grace_period_s: float = DEFAULT_GRACE_PERIOD_S, poll_interval_s: float = 0.1):
        self.grace_period_s = grace_period_s
        self.poll_interval_s = poll_interval_s

    def execute(self, step: Step, env: JobEnvironment, cancel: Optional[CancelToken] = None) -> ProcessOutput:
        if cancel is not None and cancel.is_set():
            raise StepCancelled(env.job_id, step.display_name, cancel.reason or "cancelled")

        command = str(step.uses) if step.uses is not None else (step.run or "")
        try:
            if step.uses is not None:
                action = actions.resolve(step.uses, job=env.job_id, step=step.display_name)
                logger.debug("[%s] action %s -> %s", env.job_id, step.uses, type(action).__name__)

                def run_process(argv: List[str]) -> ProcessOutput:
                    # environment read per call: earlier tools may have changed PATH
                    return self._spawn(argv, env.workspace, env.process_env(step.env), step, env, cancel)

                out = action.run(step, env, run_process)
            else:
                out = self._run_command(step, env, cancel)
        except (OSError, ValueError) as e:
            # could not even start (missing shell, bad working-directory, unreadable source)
            raise StepFailure(env.job_id, step.display_name, 1, command=command, stderr=f"{e}\n") from e

        if out.exit_code != 0:
            raise StepFailure(
                env.job_id,
                step.display_name,
                out.exit_code,
                command=command,
                stdout=out.stdout,
                stderr=out.stderr,
            )
        return out

    def shell_argv(self, command: str, env: JobEnvironment) -> List[str]:
        bash = env.which("bash")
        if bash:
            return [bash, "--noprofile", "--norc", "-eo", "pipefail", "-c", command]
        return [env.which("sh") or "/bin/sh", "-e", "-c", command]

    def _run_command(self, step: Step, env: JobEnvironment, cancel: Optional[CancelToken]) -> ProcessOutput:
        cwd = env.resolve_cwd(step.working_directory)
        if not cwd.is_dir():
            return ProcessOutput(1, "", f"working-directory not found: {cwd}\n")
        argv = self.shell_argv(step.run or "", env)
        return self._spawn(argv, cwd, env.process_env(step.env), step, env, cancel)

    def _spawn(
        self,
        argv: List[str],
        cwd: Path,
        proc_env: Dict[str, str],
        step: Step,
        env: JobEnvironment,
        cancel: Optional[CancelToken],
    ) -> ProcessOutput:
        """Run one process to completion, or terminate it once `cancel` is set."""
        if cancel is not None and cancel.is_set():
            raise StepCancelled(env.job_id, step.display_name, cancel.reason or "cancelled")

        with tempfile.TemporaryFile() as out_f, tempfile.TemporaryFile() as err_f:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=proc_env,
                stdin=subprocess.DEVNULL,
                stdout=out_f,
                stderr=err_f,
                start_new_session=_POSIX,
            )
            while True:
                try:
                    exit_code = proc.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._terminate(proc)
                        raise StepCancelled(
                            env.job_id,
                            step.display_name,
                            cancel.reason or "cancelled",
                            stdout=_read(out_f),
                            stderr=_read(err_f),
                        )
            return ProcessOutput(exit_code, _read(out_f), _read(err_f))

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if _POSIX:
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the step's process group, SIGKILL it after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.grace_period_s)
            return
        except subprocess.TimeoutExpired:
            logger.warning("process %s ignored SIGTERM for %.1fs, killing", proc.pid, self.grace_period_s)
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()
