# executor.py
from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .errors import CollaboratorError, StepCancelledError, StepError, StepTimeoutError
from .model import Step, StepResult, StepStatus
from .settings import KILL_GRACE_SECONDS, MAX_OUTPUT_CHARS, STEP_TIMEOUT

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
# per-stream cap on output held in memory while a step runs; the stored
# result is cut to MAX_OUTPUT_CHARS after redaction
CAPTURE_CHARS = 2 * MAX_OUTPUT_CHARS if MAX_OUTPUT_CHARS > 0 else None


# ----------------------------------------------------------------------
# Process primitives
# ----------------------------------------------------------------------

@dataclass
class ProcessOutput:
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0


TRUNCATION_MARKER = "[... {} characters truncated ...]\n"
READ_CHUNK = 8192


class _TailBuffer:
    """Keeps at most `limit` trailing characters of a stream (None = all of it)."""

    def __init__(self, limit: Optional[int]):
        self.limit = limit
        self.dropped = 0
        self._chunks: List[str] = []
        self._size = 0
        self._lock = threading.Lock()

    def feed(self, chunk: str) -> None:
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            # compact once the buffer holds twice the limit, not on every chunk
            if self.limit is not None and self._size > 2 * max(self.limit, READ_CHUNK):
                text = "".join(self._chunks)
                cut = len(text) - self.limit
                self.dropped += cut
                self._chunks = [text[cut:]]
                self._size = self.limit

    def text(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            dropped = self.dropped
        if self.limit is not None and len(text) > self.limit:
            dropped += len(text) - self.limit
            text = text[len(text) - self.limit:]
        if dropped:
            return TRUNCATION_MARKER.format(dropped) + text
        return text


def _drain(stream, buffer: _TailBuffer) -> None:
    with stream:
        for chunk in iter(lambda: stream.read(READ_CHUNK), ""):
            buffer.feed(chunk)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
    else:
        try:
            proc.kill()
        except OSError:
            pass


def _terminate(proc: subprocess.Popen, grace: float, readers: Sequence[threading.Thread]) -> None:
    """TERM the whole process group, KILL whatever survives the grace period."""
    kill = getattr(signal, "SIGKILL", signal.SIGTERM)
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        _signal_group(proc, kill)
        proc.wait()
    # children that ignored TERM but closed their pipes are still in the group
    _signal_group(proc, kill)
    for reader in readers:
        reader.join(timeout=grace)


def run_process(
    args: Union[str, Sequence[str]],
    *,
    cwd: Union[str, Path, None] = None,
    env: Optional[Mapping[str, str]] = None,
    shell: bool = False,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    kill_grace: float = KILL_GRACE_SECONDS,
    max_output: Optional[int] = None,
) -> ProcessOutput:
    """
    Run a command in its own process group and capture its output.

    With max_output set, only the last max_output characters of each stream
    are held in memory; anything earlier is replaced by a truncation marker.

    Raises:
      StepTimeoutError   deadline exceeded (group terminated)
      StepCancelledError cancel_event set while running (group terminated)
      OSError            the command could not be started
    """
    start = time.monotonic()
    proc = subprocess.Popen(
        args,
        shell=shell,
        cwd=str(cwd) if cwd is not None else None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    stdout, stderr = _TailBuffer(max_output), _TailBuffer(max_output)
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, stdout), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, stderr), daemon=True),
    ]
    for reader in readers:
        reader.start()
    deadline = start + timeout if timeout is not None else None

    while True:
        wait = POLL_INTERVAL
        if deadline is not None:
            wait = max(0.0, min(wait, deadline - time.monotonic()))
        try:
            proc.wait(timeout=wait)
        except subprocess.TimeoutExpired:
            pass
        else:
            # exited; done once both pipes are closed
            for reader in readers:
                reader.join(timeout=wait)
            if not any(reader.is_alive() for reader in readers):
                break

        if cancel_event is not None and cancel_event.is_set():
            _terminate(proc, kill_grace, readers)
            raise StepCancelledError(stdout=stdout.text(), stderr=stderr.text(), exit_code=proc.returncode)
        if deadline is not None and time.monotonic() >= deadline:
            _terminate(proc, kill_grace, readers)
            raise StepTimeoutError(timeout, stdout=stdout.text(), stderr=stderr.text(), exit_code=proc.returncode)

    return ProcessOutput(
        exit_code=proc.returncode,
        stdout=stdout.text(),
        stderr=stderr.text(),
        duration=time.monotonic() - start,
    )


# ----------------------------------------------------------------------
# Tool actions
# ----------------------------------------------------------------------

@dataclass
class ActionOutput:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


@dataclass
class ActionContext:
    """Everything a tool action gets to see for one step attempt."""
    step: Step
    params: Dict[str, Any]
    workdir: Path
    env: Dict[str, str]
    info: Mapping[str, str] = field(default_factory=dict)
    timeout: float = STEP_TIMEOUT
    deadline: Optional[float] = None
    cancel_event: Optional[threading.Event] = None
    kill_grace: float = KILL_GRACE_SECONDS
    max_output: Optional[int] = None

    def run_command(
        self,
        args: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Union[str, Path, None] = None,
    ) -> ProcessOutput:
        """Run a collaborator CLI under this step's deadline and cancellation."""
        remaining = None
        if self.deadline is not None:
            remaining = self.deadline - time.monotonic()
            if remaining <= 0:
                raise StepTimeoutError(self.timeout)
        merged = dict(self.env)
        merged.update(env or {})
        logger.debug("action %s: %s", self.step.uses, args[0] if args else "")
        try:
            return run_process(
                list(args),
                cwd=cwd or self.workdir,
                env=merged,
                timeout=remaining,
                cancel_event=self.cancel_event,
                kill_grace=self.kill_grace,
                max_output=self.max_output,
            )
        except StepTimeoutError as e:
            raise StepTimeoutError(self.timeout, stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code) from None


Action = Callable[[ActionContext], ActionOutput]


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

class StepExecutor:
    """
    Runs one step against a working directory and reports a StepResult.

    The executor does not interpret side effects; it only captures output
    and exit status. Failures of any kind come back as a failed StepResult.
    """

    def __init__(
        self,
        actions: Optional[Mapping[str, Action]] = None,
        *,
        default_timeout: float = STEP_TIMEOUT,
        kill_grace: float = KILL_GRACE_SECONDS,
        max_output: Optional[int] = CAPTURE_CHARS,
    ):
        if actions is None:
            # Import here to avoid circular import
            from .step_workflows import default_actions

            actions = default_actions()
        self.actions: Dict[str, Action] = dict(actions)
        self.default_timeout = default_timeout
        self.kill_grace = kill_grace
        self.max_output = max_output

    def execute(
        self,
        step: Step,
        workdir: Union[str, Path],
        env: Mapping[str, str],
        *,
        command: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        info: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> StepResult:
        """
        Execute `step`, retrying it when it is marked retryable.

        `command` / `params` are the rendered forms of step.run / step.params
        (templates and secrets substituted by the caller).
        """
        workdir = Path(workdir)
        timeout = step.timeout or self.default_timeout
        max_attempts = 1 + max(0, step.retries)
        started = time.monotonic()
        attempts = 0

        while True:
            attempts += 1
            out: Optional[ActionOutput] = None
            error: Optional[str] = None
            cancelled = False
            try:
                out = self._attempt(step, workdir, env, command, params, info, timeout, cancel_event)
                if out.exit_code == 0:
                    return self._result(step, StepStatus.SUCCEEDED, out, started, attempts)
                error = f"exit code {out.exit_code}"
            except StepCancelledError as e:
                out = ActionOutput(e.exit_code if e.exit_code is not None else -1, e.stdout, e.stderr)
                error = str(e)
                cancelled = True
            except StepError as e:
                out = ActionOutput(e.exit_code if e.exit_code is not None else -1, e.stdout, e.stderr)
                error = str(e)
            except CollaboratorError as e:
                error = f"{type(e).__name__}: {e}"
            except OSError as e:
                error = f"could not start step: {e}"

            if cancelled or attempts >= max_attempts:
                return self._result(step, StepStatus.FAILED, out, started, attempts, error)

            delay = step.retry_backoff * (2 ** (attempts - 1))
            logger.info("step '%s' failed (%s), retrying in %.1fs", step.name, error, delay)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    return self._result(step, StepStatus.FAILED, out, started, attempts, "Step cancelled")
            else:
                time.sleep(delay)

    def _attempt(
        self,
        step: Step,
        workdir: Path,
        env: Mapping[str, str],
        command: Optional[str],
        params: Optional[Mapping[str, Any]],
        info: Optional[Mapping[str, str]],
        timeout: float,
        cancel_event: Optional[threading.Event],
    ) -> ActionOutput:
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepError(f"step '{step.name}' cwd not found: {cwd}")

        if step.uses:
            action = self.actions.get(step.uses)
            if action is None:
                raise StepError(f"unknown action '{step.uses}'. Known actions: {sorted(self.actions)}")
            ctx = ActionContext(
                step=step,
                params=dict(params if params is not None else step.params),
                workdir=cwd,
                env=dict(env),
                info=dict(info or {}),
                timeout=timeout,
                deadline=time.monotonic() + timeout,
                cancel_event=cancel_event,
                kill_grace=self.kill_grace,
                max_output=self.max_output,
            )
            return action(ctx)

        proc = run_process(
            command if command is not None else (step.run or ""),
            shell=True,
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel_event=cancel_event,
            kill_grace=self.kill_grace,
            max_output=self.max_output,
        )
        return ActionOutput(proc.exit_code, proc.stdout, proc.stderr)

    @staticmethod
    def _result(
        step: Step,
        status: StepStatus,
        out: Optional[ActionOutput],
        started: float,
        attempts: int,
        error: Optional[str] = None,
    ) -> StepResult:
        return StepResult(
            name=step.name,
            status=status,
            exit_code=out.exit_code if out is not None else None,
            stdout=out.stdout if out is not None else "",
            stderr=out.stderr if out is not None else "",
            duration=time.monotonic() - started,
            attempts=attempts,
            error=error,
            continue_on_error=step.continue_on_error,
        )


def known_actions(executor: Optional[StepExecutor] = None) -> List[str]:
    if executor is not None:
        return sorted(executor.actions)
    from .step_workflows import default_actions

    return sorted(default_actions())
