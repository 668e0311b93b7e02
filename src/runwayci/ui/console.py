"""Console output formatting utilities for runwayci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional

from ..events import RunListener
from ..model import Job, JobResult, JobStatus, Run, RunStatus, StepResult, StepStatus

# jobs in one batch report from several threads
_print_lock = threading.RLock()


def _print(*args, **kwargs) -> None:
    with _print_lock:
        print(*args, **kwargs)


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, print captured step output after every step
        """
        self.debug = debug
        self.show_output = show_output

    def print_header(self, title: str) -> None:
        """Print a section header."""
        _print(f"\n{title}")
        _print("-" * len(title))

    def print_run_started(self, run_id: str, pipeline: str, event: str, job_count: int) -> None:
        """Print run start information."""
        _print("\nRUN STARTED")
        _print(f"Run: {run_id}")
        _print(f"Pipeline: {pipeline}")
        _print(f"Event: {event}")
        _print(f"Jobs: {job_count}")
        _print()

    def print_job_start(self, name: str) -> None:
        _print(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, result: StepResult) -> None:
        """One line per finished step, plus output on failure."""
        label = {
            StepStatus.SUCCEEDED: "ok",
            StepStatus.FAILED: "FAILED",
            StepStatus.SKIPPED: "skipped",
        }[result.status]
        suffix = " (continue-on-error)" if result.failed and result.continue_on_error else ""
        attempts = f", {result.attempts} attempts" if result.attempts > 1 else ""
        _print(f"[{job}] STEP: {result.name} -> {label}{suffix} ({result.duration:.1f}s{attempts})")
        if result.failed:
            if result.exit_code is not None:
                _print(f"[{job}] Exit code: {result.exit_code}")
            if result.error:
                first = result.error if self.debug else result.error.splitlines()[0]
                _print(f"[{job}] Error: {first}")
        if self.show_output or (result.failed and self.debug):
            self._print_output(job, result)

    def _print_output(self, job: str, result: StepResult) -> None:
        for stream, text in (("stdout", result.stdout), ("stderr", result.stderr)):
            if text.strip():
                _print(f"[{job}] --- {stream} ---")
                _print(text.rstrip())

    def print_job_finished(self, result: JobResult) -> None:
        if result.status == JobStatus.SKIPPED:
            _print(f"\nJOB SKIPPED: {result.name} ({result.reason})")
        elif result.status == JobStatus.FAILED:
            _print(f"JOB FAILED: {result.name}")
            if result.reason:
                _print(f"Reason: {result.reason}")
        else:
            _print(f"JOB SUCCEEDED: {result.name} ({result.duration:.1f}s)")

    def print_plan(self, batches: List[List[Job]]) -> None:
        """Print the execution plan."""
        self.print_header("PLAN")
        for i, batch in enumerate(batches, start=1):
            _print(f"  batch {i}:")
            for job in batch:
                notes = []
                if job.needs:
                    notes.append(f"needs {', '.join(job.needs)}")
                if not job.enabled:
                    notes.append("disabled")
                if job.optional:
                    notes.append("optional")
                if job.mutex:
                    notes.append(f"mutex {job.mutex}")
                if job.runs_on != "local":
                    notes.append(f"runs-on {job.runs_on}")
                extra = f" ({'; '.join(notes)})" if notes else ""
                _print(f"    {job.name}{extra}")

    def print_run_status(self, status: RunStatus, reason: Optional[str] = None) -> None:
        if status in (RunStatus.PENDING, RunStatus.TRIGGERED, RunStatus.RUNNING):
            return
        detail = f" ({reason})" if reason and status != RunStatus.SUCCEEDED else ""
        _print(f"\nRUN {status.value.upper()}{detail}")

    def print_results(self, results: Dict[str, str]) -> None:
        """Print final results summary."""
        _print("\n" + "=" * 40)
        _print("RESULTS")
        _print("=" * 40)
        for job, status in results.items():
            _print(f"  {job}: {status.upper()}")

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
        _print(f"\nERROR: {title}", file=sys.stderr)
        _print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                _print(f"  {detail}", file=sys.stderr)
        if suggestion:
            _print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            _print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        _print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            _print(f"[DEBUG] {message}", file=sys.stderr)


class ConsoleListener(RunListener):
    """Renders run events on a Console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or get_console()

    def run_status(self, run: Run, status: RunStatus, reason: Optional[str] = None) -> None:
        if status == RunStatus.RUNNING:
            self.console.print_run_started(
                run.id, run.definition.name, f"{run.event.event_type} {run.event.ref}", len(run.definition.jobs)
            )
        else:
            self.console.print_run_status(status, reason)

    def job_started(self, run: Run, job: Job) -> None:
        self.console.print_job_start(job.name)

    def job_finished(self, run: Run, result: JobResult) -> None:
        self.console.print_job_finished(result)

    def step_finished(self, run: Run, job: Job, result: StepResult) -> None:
        self.console.print_step(job.name, result)

    def cleanup_step(self, run: Run, result: StepResult) -> None:
        self.console.print_step("on_failure", result)


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
