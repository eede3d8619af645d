# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job diagnostics in RunResult
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DeclarationError(CIError):
    """The pipeline declaration is malformed or refers to something that doesn't exist."""

    def __init__(self, message: str, *, location: str | None = None):
        details = {"location": location} if location else {}
        super().__init__(kind="declaration", job="", step=None, message=message, details=details)
        self.location = location


class TriggerMismatch(CIError):
    def __init__(self, event_kind: str, triggers: list[str]):
        super().__init__(
            kind="trigger_mismatch",
            job="",
            step=None,
            message=f"pipeline is not triggered by {event_kind!r} events",
            details={"triggers": ", ".join(triggers)},
        )
        self.event_kind = event_kind


class UnknownActionError(CIError):
    """A step references an action (or action version) that isn't in the registry."""

    def __init__(self, job: str, step: str | None, action: str, *, known: list[str] | None = None):
        details = {"action": action}
        if known:
            details["known"] = ", ".join(known)
        super().__init__(
            kind="unknown_action",
            job=job,
            step=step,
            message=f"cannot resolve action {action!r}",
            details=details,
        )
        self.action = action


class StepFailure(CIError):
    """A step exited with a non-zero status. Never retried."""

    def __init__(
        self,
        job: str,
        step: str | None,
        exit_code: int,
        *,
        command: str = "",
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(
            kind="step_failed",
            job=job,
            step=step,
            message=f"step exited with code {exit_code}",
            details={"exit_code": exit_code, "command": command} if command else {"exit_code": exit_code},
        )
        self.exit_code = exit_code
        self.command = command
        self.stdout = stdout
        self.stderr = stderr


class StepCancelled(CIError):
    def __init__(self, job: str, step: str | None, reason: str, *, stdout: str = "", stderr: str = ""):
        super().__init__(kind="cancelled", job=job, step=step, message=reason)
        self.reason = reason
        self.stdout = stdout
        self.stderr = stderr


class EnvironmentProvisionError(CIError):
    def __init__(self, job: str, message: str, **details):
        super().__init__(kind="environment", job=job, step=None, message=message, details=details)


class CacheWriteError(CIError):
    """Saving a cache entry failed. Logged by the job runner, never fatal."""

    def __init__(self, job: str, key: str, message: str):
        super().__init__(kind="cache_write", job=job, step=None, message=message, details={"key": key})
        self.key = key
