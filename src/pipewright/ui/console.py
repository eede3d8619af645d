"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import Event, PipelineResult, RunResult


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every multi-line block is written
    under one lock.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        declaration: str,
        job_count: int,
        event: Optional[Event] = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Pipeline: {pipeline}", f"Declaration: {declaration}", f"Jobs: {job_count}"]
        if event is not None:
            lines.append(f"Event: {event.kind} {event.ref} @ {event.sha[:12]}")
        lines.append("")
        self._emit(*lines)

    def print_job_start(self, job: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._emit(f"[{job}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._emit(f"[{job}] ▶ {step}")

    def print_step_failure(
        self,
        job: str,
        step: str,
        reason: str,
        exit_code: Optional[int] = None,
        output: str = "",
    ) -> None:
        """
        Print failure message for a step.

        Args:
            job: Job id
            step: Step display name
            reason: Failure reason/error message
            exit_code: Optional exit code
            output: Captured output; only the tail is shown outside debug mode
        """
        lines = [f"[{job}] STEP FAILED: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        if self.debug:
            lines.append(f"[{job}] Error details: {reason}")
        else:
            first = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"[{job}] Error: {first}")
        if output.strip():
            tail = output.strip().splitlines()
            if not self.debug:
                tail = tail[-20:]
            lines.extend(f"[{job}]   {line}" for line in tail)
        self._emit(*lines)

    def print_cache_hit(self, job: str, key: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] CACHE: hit ({_short(key)})")

    def print_cache_miss(self, job: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        if not self.quiet:
            self._emit(f"[{job}] CACHE: saved ({_short(key)})")

    def print_cache_error(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] CACHE: save failed ({reason})", err=True)

    def print_job_finished(self, result: RunResult) -> None:
        """Print a job's terminal status."""
        mark = {"success": "✓", "failure": "✗", "cancelled": "⊘"}.get(result.status.value, "?")
        self._emit(f"{mark} {result.job} ({result.status.value}, {result.duration_s:.1f}s)")

    def print_results(self, result: PipelineResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in result.results:
            line = f"  {r.job}: {r.status.value.upper()}"
            if r.failed_step_name:
                line += f" (step {r.failed_step + 1}: {r.failed_step_name})"
            elif r.error and r.status.value != "success":
                line += f" ({r.error.splitlines()[0]})"
            if r.tolerated:
                line += " [continue-on-error]"
            lines.append(line)
        lines.append(f"PIPELINE: {result.state.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


def _short(key: str) -> str:
    return key[:24] + "..." if len(key) > 24 else key


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
