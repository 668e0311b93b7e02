"""Pipeline engine: run lifecycle on top of the ``transitions`` library.

    pending -> triggered -> running -> {succeeded, failed, cancelled}

``accept`` is guarded by the definition's trigger predicate. ``cancel`` is
valid from every non-terminal state.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from typing import Any, Dict, List, Optional, Union

from transitions import MachineError
from transitions.extensions import LockedMachine

from .events import CompositeListener, RunListener
from .model import JobResult, JobStatus, PipelineDefinition, Run, RunStatus, TriggerEvent
from .scheduler import Scheduler
from .secrets import SecretResolver, SecretStore
from .settings import KEEP_WORKSPACES

logger = logging.getLogger(__name__)

CLEANUP_DIR = "_on_failure"

RUN_STATES: List[str] = [s.value for s in RunStatus]

RUN_TRANSITIONS: List[Dict[str, Any]] = [
    {
        "trigger": "accept",
        "source": "pending",
        "dest": "triggered",
        "conditions": ["trigger_matches"],
    },
    {"trigger": "begin", "source": "triggered", "dest": "running"},
    {"trigger": "succeed", "source": "running", "dest": "succeeded"},
    {"trigger": "fail", "source": "running", "dest": "failed"},
    {
        "trigger": "cancel",
        "source": ["pending", "triggered", "running"],
        "dest": "cancelled",
    },
]


def create_run_machine(run: Run, listener: Optional[RunListener] = None) -> LockedMachine:
    """
    Bind a lifecycle machine to `run`.

    Triggers accept keyword arguments; a ``reason=`` is forwarded to the
    listener with the new status.
    """

    def _notify(event) -> None:
        if listener is not None:
            listener.run_status(event.model, RunStatus(event.state.name), event.kwargs.get("reason"))

    return LockedMachine(
        model=run,
        states=RUN_STATES,
        transitions=RUN_TRANSITIONS,
        initial=run.state,
        auto_transitions=False,
        send_event=True,
        after_state_change=[_notify],
    )


class PipelineEngine:
    """
    Top-level controller: evaluates triggers, creates Runs, drives the
    Scheduler and decides every Run's terminal status.
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        *,
        secret_store: Optional[SecretStore] = None,
        listeners: Optional[List[RunListener]] = None,
        keep_workspaces: bool = KEEP_WORKSPACES,
    ):
        self.scheduler = scheduler or Scheduler()
        self.secret_store = secret_store
        self.listener = CompositeListener(listeners or [])
        self.keep_workspaces = keep_workspaces
        self._runs: Dict[str, Run] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_run(self, definition: PipelineDefinition, event: TriggerEvent) -> Optional[Run]:
        """
        Instantiate a Run for `event`. Returns None (and keeps nothing) when
        the trigger predicate does not match.
        """
        run = Run(definition=definition, event=event)
        create_run_machine(run, self.listener)
        if not run.accept(reason=f"{event.event_type} on {event.ref}"):
            logger.info(
                "trigger did not match for pipeline '%s' (%s on %s)",
                definition.name, event.event_type, event.ref,
            )
            return None
        with self._lock:
            self._runs[run.id] = run
        return run

    def execute(self, run: Run) -> RunStatus:
        """Drive a triggered Run to a terminal status and return it."""
        secrets = SecretResolver(self.secret_store)
        try:
            run.started_at = time.time()
            # a cancel can land at any point before this; begin then has nothing to start
            if not self._transition(run, "begin"):
                self._skip_all(run, "run cancelled")
                return run.status

            self.scheduler.execute(
                run,
                secrets,
                self.listener,
                on_batch=lambda index, names: self._after_batch(run),
            )
            self._finalize(run)

            if run.status == RunStatus.FAILED and run.definition.on_failure:
                self._cleanup(run, secrets)
        except Exception as e:
            logger.exception("run %s crashed", run.id)
            self._transition(run, "fail", reason=f"internal error: {secrets.redact(str(e))}")
            raise
        finally:
            run.finished_at = time.time()
            secrets.close()
            if not self.keep_workspaces:
                shutil.rmtree(self.scheduler.workspace_root / run.id, ignore_errors=True)
            with self._lock:
                self._runs.pop(run.id, None)
        return run.status

    def run(self, definition: PipelineDefinition, event: TriggerEvent) -> Optional[Run]:
        """create_run() + execute(). Returns None if the trigger did not match."""
        run = self.create_run(definition, event)
        if run is None:
            return None
        self.execute(run)
        return run

    def cancel(self, run_or_id: Union[Run, str]) -> bool:
        """
        Request cancellation. Running steps are terminated, no further batch
        is dispatched. Returns False if the run is unknown or already
        finished.
        """
        run = run_or_id if isinstance(run_or_id, Run) else self.get(run_or_id)
        if run is None:
            return False
        try:
            run.cancel(reason="cancellation requested")
        except MachineError:
            return False
        run.cancel_event.set()
        logger.info("run %s cancelled", run.id)
        return True

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def active_runs(self) -> List[Run]:
        with self._lock:
            return [r for r in self._runs.values() if not r.status.terminal]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _transition(run: Run, trigger: str, **kwargs) -> bool:
        """Fire a trigger unless a concurrent cancel already ended the run."""
        try:
            return getattr(run, trigger)(**kwargs)
        except MachineError:
            logger.debug("run %s: '%s' ignored in state %s", run.id, trigger, run.state)
            return False

    def _after_batch(self, run: Run) -> None:
        if not self.scheduler.fail_fast:
            return
        failed = run.required_failures()
        if failed and run.status == RunStatus.RUNNING:
            self._transition(run, "fail", reason=f"required job(s) failed: {', '.join(failed)}")

    def _finalize(self, run: Run) -> None:
        if run.status != RunStatus.RUNNING:
            return
        failed = run.required_failures()
        if failed:
            self._transition(run, "fail", reason=f"required job(s) failed: {', '.join(failed)}")
        else:
            self._transition(run, "succeed")

    def _skip_all(self, run: Run, reason: str) -> None:
        for name, status in run.statuses().items():
            if not status.terminal:
                result = JobResult(name=name, status=JobStatus.SKIPPED, reason=reason)
                run.record_job_result(result)
                self.listener.job_finished(run, result)

    def _cleanup(self, run: Run, secrets: SecretResolver) -> None:
        """Run the definition's on_failure steps; every step runs even if one fails."""
        logger.info("run %s failed, running %d cleanup step(s)", run.id, len(run.definition.on_failure))

        def _record(result) -> None:
            run.cleanup_results.append(result)
            self.listener.cleanup_step(run, result)

        _results, reason = self.scheduler.run_steps(
            run.definition.on_failure,
            run=run,
            job_name="on_failure",
            workdir=self.scheduler.workdir_for(run, CLEANUP_DIR),
            env_layers=[run.definition.env],
            permissions="write",
            secrets=secrets,
            on_step=_record,
            stop_on_cancel=False,
            keep_going=True,
        )
        if reason:
            logger.warning("run %s: cleanup incomplete: %s", run.id, reason)
