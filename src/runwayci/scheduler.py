# scheduler.py
from __future__ import annotations

import logging
import os
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .dag import plan_batches
from .errors import SecretNotFoundError
from .events import RunListener
from .executor import TRUNCATION_MARKER, StepExecutor
from .model import (
    EnvValue,
    Job,
    JobResult,
    JobStatus,
    PipelineDefinition,
    Run,
    SecretRef,
    Step,
    StepResult,
    StepStatus,
)
from .secrets import SecretResolver
from .settings import (
    MAX_OUTPUT_CHARS,
    MAX_WORKERS,
    RUNNER_CLASSES,
    SECRET_ENV_PREFIX,
    WORKSPACE_ROOT,
)
from .templating import render, render_value

logger = logging.getLogger(__name__)

MUTEX_POLL = 0.1
TRUNCATED_RE = re.compile(r"\[\.\.\. (\d+) characters truncated \.\.\.\]\n")


def truncate_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Keep the tail of long output; that is where failures are."""
    if limit <= 0 or len(text) <= limit:
        return text
    dropped = len(text) - limit
    # output already cut while it was captured carries its own marker
    earlier = TRUNCATED_RE.match(text)
    if earlier:
        dropped += int(earlier.group(1)) - len(earlier.group(0))
    return TRUNCATION_MARKER.format(dropped) + text[-limit:]


class Scheduler:
    """
    Runs a Run's jobs batch by batch.

    Each batch is dispatched onto a thread pool (one worker per job) and the
    scheduler waits for the whole batch before looking at the next one. A job
    runs only if every job it needs has Succeeded; otherwise it is Skipped.
    """

    def __init__(
        self,
        executor: Optional[StepExecutor] = None,
        *,
        workspace_root: str | Path = WORKSPACE_ROOT,
        runner_classes: Sequence[str] = RUNNER_CLASSES,
        max_workers: Optional[int] = MAX_WORKERS,
        fail_fast: bool = True,
        base_env: Optional[Mapping[str, str]] = None,
        secret_prefix: str = SECRET_ENV_PREFIX,
        output_limit: int = MAX_OUTPUT_CHARS,
    ):
        self.executor = executor or StepExecutor()
        self.workspace_root = Path(workspace_root).resolve()
        self.runner_classes = tuple(runner_classes)
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.secret_prefix = secret_prefix
        self.output_limit = output_limit
        self._base_env = dict(base_env) if base_env is not None else None
        self._mutexes: Dict[str, threading.Lock] = {}
        self._mutexes_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(self, definition: PipelineDefinition) -> List[List[Job]]:
        return plan_batches(definition)

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def base_env(self) -> Dict[str, str]:
        """Process environment without the variables backing the secret store."""
        env = self._base_env if self._base_env is not None else dict(os.environ)
        if not self.secret_prefix:
            return dict(env)
        return {k: v for k, v in env.items() if not k.startswith(self.secret_prefix)}

    def workdir_for(self, run: Run, name: str) -> Path:
        return self.workspace_root / run.id / name

    @staticmethod
    def template_values(run: Run, job_name: str) -> Dict[str, Dict[str, str]]:
        return {
            "run": {
                "id": run.id,
                "ref": run.event.ref,
                "branch": run.event.branch,
                "sha": run.event.sha,
                "event": run.event.event_type,
                "repository": run.event.repository or "",
            },
            "job": {"name": job_name},
        }

    def _ci_env(self, run: Run, job_name: str, workdir: Path, permissions: str) -> Dict[str, str]:
        return {
            "CI": "true",
            "RUNWAY": "true",
            "RUNWAY_RUN_ID": run.id,
            "RUNWAY_PIPELINE": run.definition.name,
            "RUNWAY_JOB": job_name,
            "RUNWAY_EVENT": run.event.event_type,
            "RUNWAY_REF": run.event.ref,
            "RUNWAY_BRANCH": run.event.branch,
            "RUNWAY_SHA": run.event.sha,
            "RUNWAY_REPOSITORY": run.event.repository or "",
            "RUNWAY_WORKSPACE": str(workdir),
            "RUNWAY_PERMISSIONS": permissions,
        }

    def _step_env(
        self,
        layers: Sequence[Mapping[str, EnvValue]],
        base: Mapping[str, str],
        values: Mapping[str, Mapping[str, str]],
        secrets: SecretResolver,
    ) -> Dict[str, str]:
        env = dict(base)
        for layer in layers:
            for name, value in layer.items():
                if isinstance(value, SecretRef):
                    env[name] = secrets.resolve(value.name)
                else:
                    env[name] = render(value, values, secrets.resolve)
        return env

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def run_steps(
        self,
        steps: Sequence[Step],
        *,
        run: Run,
        job_name: str,
        workdir: Path,
        env_layers: Sequence[Mapping[str, EnvValue]],
        permissions: str,
        secrets: SecretResolver,
        on_step: Optional[Callable[[StepResult], None]] = None,
        stop_on_cancel: bool = True,
        keep_going: bool = False,
    ) -> Tuple[List[StepResult], Optional[str]]:
        """
        Run steps in order in `workdir`.

        Returns (results, reason). `reason` is set when the sequence was cut
        short; steps that never ran are recorded as Skipped. With
        `keep_going` every step runs and `reason` names the first failure.
        """
        workdir.mkdir(parents=True, exist_ok=True)
        values = self.template_values(run, job_name)
        base = self.base_env()
        base.update(self._ci_env(run, job_name, workdir, permissions))
        info = {
            "repository": run.event.repository or "",
            "ref": run.event.ref,
            "sha": run.event.sha,
            "branch": run.event.branch,
            "event": run.event.event_type,
        }
        cancel_event = run.cancel_event if stop_on_cancel else None

        results: List[StepResult] = []
        reason: Optional[str] = None
        for step in steps:
            if stop_on_cancel and run.cancel_requested:
                reason = reason or "run cancelled"
            if reason is not None and not keep_going:
                skipped = StepResult(name=step.name, status=StepStatus.SKIPPED, error=reason,
                                     continue_on_error=step.continue_on_error)
                results.append(skipped)
                if on_step:
                    on_step(skipped)
                continue

            result = self._run_step(step, workdir, [*env_layers, step.env], base, values, info, secrets, cancel_event)
            results.append(result)
            if on_step:
                on_step(result)

            if result.blocks_job:
                reason = reason or f"step '{step.name}' failed: {result.error}"
            elif result.failed:
                logger.info("[%s] step '%s' failed, continuing (continue-on-error)", job_name, step.name)

        return results, reason

    def _run_step(
        self,
        step: Step,
        workdir: Path,
        layers: Sequence[Mapping[str, EnvValue]],
        base: Mapping[str, str],
        values: Mapping[str, Mapping[str, str]],
        info: Mapping[str, str],
        secrets: SecretResolver,
        cancel_event: Optional[threading.Event],
    ) -> StepResult:
        started = time.monotonic()
        try:
            env = self._step_env(layers, base, values, secrets)
            command = render(step.run, values, secrets.resolve, quote=True) if step.run else None
            params = render_value(dict(step.params), values, secrets.resolve)
        except SecretNotFoundError as e:
            # never retried: a missing secret will not appear by waiting
            return StepResult(
                name=step.name,
                status=StepStatus.FAILED,
                duration=time.monotonic() - started,
                attempts=0,
                error=str(e),
                continue_on_error=step.continue_on_error,
            )

        result = self.executor.execute(
            step,
            workdir,
            env,
            command=command,
            params=params,
            info=info,
            cancel_event=cancel_event,
        )
        result.stdout = truncate_output(secrets.redact(result.stdout), self.output_limit)
        result.stderr = truncate_output(secrets.redact(result.stderr), self.output_limit)
        if result.error:
            result.error = secrets.redact(result.error)
        return result

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def _mutex(self, tag: str) -> threading.Lock:
        with self._mutexes_guard:
            return self._mutexes.setdefault(tag, threading.Lock())

    def _acquire(self, lock: threading.Lock, run: Run) -> bool:
        while not lock.acquire(timeout=MUTEX_POLL):
            if run.cancel_requested:
                return False
        return True

    def run_job(
        self,
        job: Job,
        run: Run,
        secrets: SecretResolver,
        listener: Optional[RunListener] = None,
    ) -> JobResult:
        """Run one job's steps sequentially in its own working directory."""
        listener = listener or RunListener()
        result = JobResult(name=job.name, status=JobStatus.RUNNING, started_at=time.time())

        if job.runs_on not in self.runner_classes:
            result.status = JobStatus.FAILED
            result.reason = f"no runner offers class '{job.runs_on}' (available: {', '.join(self.runner_classes)})"
            result.finished_at = time.time()
            return result

        lock = self._mutex(job.mutex) if job.mutex else None
        if lock is not None and not self._acquire(lock, run):
            result.status = JobStatus.FAILED
            result.reason = "run cancelled"
            result.finished_at = time.time()
            return result

        try:
            run.set_job_status(job.name, JobStatus.RUNNING)
            listener.job_started(run, job)
            steps, reason = self.run_steps(
                job.steps,
                run=run,
                job_name=job.name,
                workdir=self.workdir_for(run, job.name),
                env_layers=[run.definition.env, job.env],
                permissions=job.permissions,
                secrets=secrets,
                on_step=lambda r: listener.step_finished(run, job, r),
            )
        finally:
            if lock is not None:
                lock.release()

        result.steps = steps
        result.reason = reason
        result.status = JobStatus.FAILED if reason else JobStatus.SUCCEEDED
        result.finished_at = time.time()
        return result

    def _skip_reason(self, job: Job, run: Run, stop: Optional[str]) -> Optional[str]:
        if stop:
            return stop
        if not job.enabled:
            return "disabled"
        unmet = [
            f"{need} ({run.job_status(need).value})"
            for need in job.needs
            if run.job_status(need) != JobStatus.SUCCEEDED
        ]
        if unmet:
            return f"needs not satisfied: {', '.join(unmet)}"
        return None

    def _finish(self, run: Run, result: JobResult, listener: RunListener) -> None:
        run.record_job_result(result)
        listener.job_finished(run, result)

    def execute(
        self,
        run: Run,
        secrets: SecretResolver,
        listener: Optional[RunListener] = None,
        *,
        on_batch: Optional[Callable[[int, List[str]], None]] = None,
    ) -> Dict[str, JobStatus]:
        """
        Drive every batch of `run` to completion.

        Between batches: a cancellation request, or (with fail_fast) a failed
        required job, stops dispatching; the remaining jobs are Skipped.
        """
        listener = listener or RunListener()
        batches = self.plan(run.definition)
        stop: Optional[str] = None

        for index, batch in enumerate(batches):
            if run.cancel_requested:
                stop = "run cancelled"
            elif self.fail_fast and stop is None and run.required_failures():
                stop = "fail-fast: run failed"

            runnable: List[Job] = []
            for job in batch:
                reason = self._skip_reason(job, run, stop)
                if reason:
                    logger.debug("skipping job '%s': %s", job.name, reason)
                    self._finish(run, JobResult(name=job.name, status=JobStatus.SKIPPED, reason=reason), listener)
                else:
                    runnable.append(job)

            if runnable:
                self._run_batch(runnable, run, secrets, listener)

            names = [j.name for j in batch]
            listener.batch_finished(run, index, names)
            if on_batch is not None:
                on_batch(index, names)

        return run.statuses()

    def _run_batch(self, jobs: List[Job], run: Run, secrets: SecretResolver, listener: RunListener) -> None:
        workers = max(1, min(self.max_workers or len(jobs), len(jobs)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="runway-job") as pool:
            in_flight = {pool.submit(self.run_job, job, run, secrets, listener): job for job in jobs}
            for fut in as_completed(in_flight):
                job = in_flight[fut]
                try:
                    result = fut.result()
                except Exception as e:
                    logger.exception("job '%s' crashed", job.name)
                    result = JobResult(
                        name=job.name,
                        status=JobStatus.FAILED,
                        reason=f"internal error: {secrets.redact(str(e))}",
                        finished_at=time.time(),
                    )
                self._finish(run, result, listener)
