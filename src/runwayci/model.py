# model.py
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    PENDING = "pending"
    TRIGGERED = "triggered"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


@dataclass(frozen=True)
class SecretRef:
    """A named secret, resolved lazily at step time."""
    name: str


EnvValue = Union[str, SecretRef]


@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a job.

    Exactly one of `run` (shell command template) or `uses` (tool action name)
    is set. `params` are the action's inputs.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, EnvValue] = field(default_factory=dict)
    cwd: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = None
    retries: int = 0
    retry_backoff: float = 1.0

    @property
    def kind(self) -> str:
        return "uses" if self.uses else "run"


@dataclass(frozen=True)
class Job:
    """A CI job: ordered steps + dependencies + runner requirements."""
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    runs_on: str = "local"
    permissions: str = "read"               # "read" | "write" (repository scope)
    enabled: bool = True
    optional: bool = False                  # failure does not fail the run
    mutex: Optional[str] = None             # jobs sharing a tag never overlap
    env: Mapping[str, EnvValue] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerEvent:
    event_type: str
    ref: str
    sha: str = ""
    repository: Optional[str] = None

    @property
    def branch(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


@dataclass(frozen=True)
class Trigger:
    """Trigger predicate: which events (and branches) create a Run."""
    events: Tuple[str, ...] = ("push",)
    branches: Tuple[str, ...] = ()          # fnmatch patterns; empty = any branch

    def matches(self, event: TriggerEvent) -> bool:
        if self.events and event.event_type not in self.events:
            return False
        if not self.branches:
            return True
        return any(fnmatch(event.branch, pattern) for pattern in self.branches)


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    jobs: Mapping[str, Job]                 # declaration order preserved
    trigger: Trigger = field(default_factory=Trigger)
    env: Mapping[str, EnvValue] = field(default_factory=dict)
    on_failure: Tuple[Step, ...] = ()

    @property
    def job_names(self) -> List[str]:
        return list(self.jobs)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    attempts: int = 0
    error: Optional[str] = None
    continue_on_error: bool = False

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def blocks_job(self) -> bool:
        """A failed step aborts its job unless it is continue-on-error."""
        return self.failed and not self.continue_on_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": round(self.duration, 3),
            "attempts": self.attempts,
            "error": self.error,
            "continue_on_error": self.continue_on_error,
        }


@dataclass
class JobResult:
    name: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    reason: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at


# ----------------------------------------------------------------------
# Run
# ----------------------------------------------------------------------

@dataclass(eq=False)
class Run:
    """
    One execution of a PipelineDefinition for one trigger event.

    `state` is driven by the engine's lifecycle machine. Job statuses are
    written from worker threads, always under `_lock`.
    """
    definition: PipelineDefinition
    event: TriggerEvent
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: str = RunStatus.PENDING.value
    job_statuses: Dict[str, JobStatus] = field(default_factory=dict)
    job_results: Dict[str, JobResult] = field(default_factory=dict)
    cleanup_results: List[StepResult] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        for name in self.definition.jobs:
            self.job_statuses.setdefault(name, JobStatus.PENDING)

    @property
    def status(self) -> RunStatus:
        return RunStatus(self.state)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def trigger_matches(self, *args: Any, **kwargs: Any) -> bool:
        return self.definition.trigger.matches(self.event)

    def job_status(self, name: str) -> JobStatus:
        with self._lock:
            return self.job_statuses[name]

    def set_job_status(self, name: str, status: JobStatus) -> None:
        with self._lock:
            self.job_statuses[name] = status

    def record_job_result(self, result: JobResult) -> None:
        with self._lock:
            self.job_results[result.name] = result
            self.job_statuses[result.name] = result.status

    def statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return dict(self.job_statuses)

    def required_failures(self) -> List[str]:
        """Names of non-optional jobs that have failed."""
        with self._lock:
            return [
                name
                for name, status in self.job_statuses.items()
                if status == JobStatus.FAILED and not self.definition.jobs[name].optional
            ]
