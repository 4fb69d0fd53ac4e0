"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from ..aggregator import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None, err_stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Output stream (defaults to sys.stdout at write time)
            err_stream: Error stream (defaults to sys.stderr at write time)
        """
        self.debug = debug
        self._stream = stream
        self._err_stream = err_stream
        # jobs print from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        stream = self._stream or sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _err(self, *lines: str) -> None:
        stream = self._err_stream or sys.stderr
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out("", title, "-" * len(title))

    def print_run_started(self, workflow: str, event: str, job_count: int) -> None:
        """Print run start information."""
        self._out("", "RUN STARTED", f"Workflow: {workflow}", f"Event: {event}", f"Jobs: {job_count}", "")

    def print_run_skipped(self, workflow: str, event: str) -> None:
        self._out(f"RUN SKIPPED: {workflow} does not trigger on {event}")

    def print_plan(self, stages: List[List[str]]) -> None:
        """Print stages of job instances (each stage can run in parallel)."""
        lines = []
        for idx, stage in enumerate(stages, start=1):
            lines.append(f"Stage {idx}: {', '.join(stage)}")
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} (condition false)")

    def print_step_failure(
        self,
        job: str,
        name: str,
        exit_code: Optional[int],
        output: str = "",
        tolerated: bool = False,
    ) -> None:
        """
        Print a failed step, with the tail of its output.

        Args:
            job: Job instance key
            name: Step name
            exit_code: Exit code, if the step got as far as producing one
            output: Captured output
            tolerated: True when the step is continue-on-error
        """
        prefix = "STEP FAILED (continue-on-error)" if tolerated else "STEP FAILED"
        lines = [f"[{job}] {prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        tail = output.strip().splitlines()
        if not self.debug:
            tail = tail[-20:]
        lines.extend(f"[{job}]   | {line}" for line in tail)
        self._out(*lines)

    def print_job_finished(self, name: str, status: str, duration: Optional[float] = None) -> None:
        line = f"JOB FINISHED: {name} -> {status.upper()}"
        if duration is not None:
            line += f" ({duration:.1f}s)"
        self._out(line)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_cache_hit(self, job: str, key: str, exact: bool = True) -> None:
        kind = "hit" if exact else "partial hit"
        self._out(f"[{job}] CACHE: {kind} ({key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._out(f"[{job}] CACHE: saved ({key})")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs.values():
            marker = "" if job.required else " (optional)"
            lines.append(f"  {job.key}: {job.status.value.upper()}{marker}")
        lines.append("")
        lines.append(f"RUN {'SUCCEEDED' if result.succeeded else 'FAILED'}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
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
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._err(*lines)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._err("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        else:
            self._err(f"Error: {exc}")

    def print_warning(self, message: str) -> None:
        self._err(f"WARNING: {message}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._err(f"[DEBUG] {message}")


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Optional[Console]) -> None:
    """Set (or with None, reset) the global console instance."""
    global _console
    _console = console
