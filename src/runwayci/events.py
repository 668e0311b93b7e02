# events.py
# Run lifecycle notifications. The engine and scheduler call these hooks;
# the console and the run store subscribe to them.
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .model import Job, JobResult, Run, RunStatus, StepResult

logger = logging.getLogger(__name__)


class RunListener:
    """No-op base class. Override only what you need."""

    def run_status(self, run: Run, status: RunStatus, reason: Optional[str] = None) -> None:
        pass

    def job_started(self, run: Run, job: Job) -> None:
        pass

    def job_finished(self, run: Run, result: JobResult) -> None:
        pass

    def step_finished(self, run: Run, job: Job, result: StepResult) -> None:
        pass

    def batch_finished(self, run: Run, index: int, names: List[str]) -> None:
        pass

    def cleanup_step(self, run: Run, result: StepResult) -> None:
        pass


class CompositeListener(RunListener):
    """
    Fans every event out to several listeners.

    A listener that raises is logged and skipped; one broken subscriber
    must not change the outcome of a run.
    """

    def __init__(self, listeners: Iterable[Optional[RunListener]] = ()):
        self.listeners: List[RunListener] = [l for l in listeners if l is not None]

    def _emit(self, hook: str, *args) -> None:
        for listener in self.listeners:
            try:
                getattr(listener, hook)(*args)
            except Exception:
                logger.exception("listener %s failed in %s", type(listener).__name__, hook)

    def run_status(self, run, status, reason=None):
        self._emit("run_status", run, status, reason)

    def job_started(self, run, job):
        self._emit("job_started", run, job)

    def job_finished(self, run, result):
        self._emit("job_finished", run, result)

    def step_finished(self, run, job, result):
        self._emit("step_finished", run, job, result)

    def batch_finished(self, run, index, names):
        self._emit("batch_finished", run, index, names)

    def cleanup_step(self, run, result):
        self._emit("cleanup_step", run, result)
