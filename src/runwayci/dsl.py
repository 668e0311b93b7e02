# src/runwayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import EnvValue, Job, PipelineDefinition, SecretRef, Step, Trigger


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Mapping[str, EnvValue]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    retries: int = 0,
    retry_backoff: float = 1.0,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
        retries=retries,
        retry_backoff=retry_backoff,
    )


def uses(
    name: str,
    action: str,
    params: Optional[Mapping[str, Any]] = None,
    *,
    cwd: str | None = None,
    env: Optional[Mapping[str, EnvValue]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    retries: int = 0,
    retry_backoff: float = 1.0,
) -> Step:
    """Create a tool-action step, e.g. uses("scan", "sonar-scan", {...})."""
    return Step(
        name=name,
        uses=action,
        params=dict(params or {}),
        cwd=cwd,
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
        retries=retries,
        retry_backoff=retry_backoff,
    )


def secret(name: str) -> SecretRef:
    """Reference a secret in an env mapping; resolved only when the step runs."""
    return SecretRef(name)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Union[str, Sequence[str], None] = None,
    runs_on: str = "local",
    permissions: str = "read",
    enabled: bool = True,
    optional: bool = False,
    mutex: Optional[str] = None,
    env: Optional[Mapping[str, EnvValue]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]

    return Job(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        runs_on=runs_on,
        permissions=permissions,
        enabled=enabled,
        optional=optional,
        mutex=mutex,
        env=dict(env or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, EnvValue] = {}
        self._runs_on = "local"
        self._permissions = "read"
        self._enabled = True
        self._optional = False
        self._mutex: Optional[str] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def define_action(self, name: str, action: str, **params):
        self._steps.append(uses(name, action, params))
        return self

    def with_env(self, **env):
        # secrets stay as references, everything else becomes a string
        self._env.update({k: v if isinstance(v, SecretRef) else str(v) for k, v in env.items()})
        return self

    def on_runner(self, runner_class: str):
        self._runs_on = runner_class
        return self

    def with_permissions(self, scope: str):
        self._permissions = scope
        return self

    def allow_failure(self, optional: bool = True):
        self._optional = optional
        return self

    def disable(self, disabled: bool = True):
        self._enabled = not disabled
        return self

    def exclusive(self, tag: str):
        self._mutex = tag
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return Job(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            runs_on=self._runs_on,
            permissions=self._permissions,
            enabled=self._enabled,
            optional=self._optional,
            mutex=self._mutex,
            env=dict(self._env),
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11","3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow / pipeline helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Union[Job, Iterable[Job]]) -> List[Job]:
    """
    Flatten jobs (and lists of jobs, e.g. from matrix()) into one list.

        def workflow():
            return wf(job(...), matrix(...).jobs(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, Job):
            out.append(j)
        else:
            out.extend(j)
    return out


def pipeline(
    name: str,
    *jobs: Union[Job, Iterable[Job]],
    events: Sequence[str] = ("push",),
    branches: Sequence[str] = (),
    env: Optional[Mapping[str, EnvValue]] = None,
    on_failure: Sequence[Step] = (),
) -> PipelineDefinition:
    """
    Build a PipelineDefinition. Validation happens in load_definition().

        PIPELINE = pipeline("ci", job(...), job(...), branches=["main"])
    """
    flat = wf(*jobs)
    by_name: Dict[str, Job] = {}
    for j in flat:
        if j.name in by_name:
            raise ValueError(f"Duplicate job name: {j.name!r}")
        by_name[j.name] = j
    return PipelineDefinition(
        name=name,
        jobs=by_name,
        trigger=Trigger(events=tuple(events), branches=tuple(branches)),
        env=dict(env or {}),
        on_failure=tuple(on_failure),
    )
