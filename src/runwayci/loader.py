# loader.py
# Pipeline definitions: YAML/JSON documents, Python workflow files, or
# plain mappings, all validated into one immutable PipelineDefinition.
from __future__ import annotations

import logging
import re
import runpy
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml

from .dag import build_dag, check_acyclic
from .errors import ConfigError
from .model import EnvValue, Job, PipelineDefinition, SecretRef, Step, Trigger
from .templating import SECRET_NAME_RE, iter_strings, validate_template

logger = logging.getLogger(__name__)

JOB_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
PERMISSIONS = ("read", "write")

PIPELINE_KEYS = {"name", "on", "env", "jobs", "on_failure"}
JOB_KEYS = {"name", "steps", "needs", "runs_on", "permissions", "enabled", "optional", "mutex", "env"}
STEP_KEYS = {
    "name", "run", "uses", "with", "env", "cwd",
    "continue_on_error", "timeout", "retries", "retry_backoff",
}

Source = Union[str, Path, Mapping[str, Any], PipelineDefinition]


def load_definition(source: Source, *, actions: Optional[Iterable[str]] = None) -> PipelineDefinition:
    """
    Load and validate a pipeline definition.

    `source` is a path (.yml/.yaml/.json/.py), a parsed mapping, or an
    existing PipelineDefinition (validated again). When `actions` is given,
    every `uses:` must name one of them.

    Raises:
      ConfigError (CyclicDependencyError for cycles). Nothing partial is
      ever returned.
    """
    if isinstance(source, PipelineDefinition):
        definition = source
    elif isinstance(source, Mapping):
        definition = parse_definition(source)
    else:
        path = Path(source).expanduser()
        if not path.exists():
            raise ConfigError(f"Definition file not found: {path}")
        if path.suffix == ".py":
            definition = _load_python(path)
        elif path.suffix in (".yml", ".yaml", ".json"):
            definition = parse_definition(_read_document(path), default_name=path.stem)
        else:
            raise ConfigError(f"Unsupported definition file type: {path.name} (use .yml, .yaml, .json or .py)")

    validate_definition(definition, actions=actions)
    logger.debug("loaded pipeline '%s' with %d job(s)", definition.name, len(definition.jobs))
    return definition


def _read_document(path: Path) -> Mapping[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"{path.name}: invalid YAML/JSON: {e}") from None
    except OSError as e:
        raise ConfigError(f"{path}: {e.strerror}") from None
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{path.name}: top level must be a mapping")
    return raw


def _load_python(path: Path) -> PipelineDefinition:
    """
    Execute a Python workflow file. It must define one of:
      - PIPELINE = pipeline(...)  or  def pipeline() -> PipelineDefinition
      - JOBS = [Job, ...]         or  def workflow() -> List[Job]
    """
    # Import here to avoid circular import
    from . import dsl

    try:
        globals_dict = runpy.run_path(str(path.resolve()), run_name=f"runway_workflow_{path.stem}")
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"{path.name}: error while executing workflow file: {e}") from e

    result: Any = None
    try:
        if "PIPELINE" in globals_dict:
            result = globals_dict["PIPELINE"]
        elif callable(globals_dict.get("pipeline")) and globals_dict["pipeline"] is not dsl.pipeline:
            result = globals_dict["pipeline"]()
        elif "JOBS" in globals_dict:
            result = globals_dict["JOBS"]
        elif callable(globals_dict.get("workflow")) and globals_dict["workflow"] is not dsl.wf:
            result = globals_dict["workflow"]()
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"{path.name}: error while building workflow: {e}") from e

    if isinstance(result, PipelineDefinition):
        return result
    if isinstance(result, (list, tuple)) and all(isinstance(j, Job) for j in result):
        return dsl.pipeline(path.stem, *result)
    raise ConfigError(
        f"{path.name}: workflow must define PIPELINE / pipeline() returning a PipelineDefinition, "
        "or JOBS / workflow() returning a list of Job."
    )


# ----------------------------------------------------------------------
# Mapping -> model
# ----------------------------------------------------------------------

def _normalize_keys(raw: Mapping[str, Any], allowed: set, where: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        # YAML 1.1 reads a bare `on:` key as boolean True
        if key is True:
            key = "on"
        norm = str(key).replace("-", "_")
        if norm not in allowed:
            raise ConfigError(f"{where}: unknown key '{key}'. Allowed: {sorted(allowed)}")
        out[norm] = value
    return out


def _expect(value: Any, kind: Union[type, Tuple[type, ...]], where: str, what: str) -> Any:
    # bool is an int subclass; never accept it as a number
    if isinstance(value, bool) and kind in ((int, float), int, float):
        raise ConfigError(f"{where}: {what} must be a number, got {value!r}")
    if not isinstance(value, kind):
        raise ConfigError(f"{where}: {what} has the wrong type ({type(value).__name__})")
    return value


def _str_list(value: Any, where: str, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise ConfigError(f"{where}: {what} must be a string or a list of strings")


def _parse_env(raw: Any, where: str) -> Dict[str, EnvValue]:
    if raw is None:
        return {}
    _expect(raw, Mapping, where, "env")
    env: Dict[str, EnvValue] = {}
    for name, value in raw.items():
        if isinstance(value, SecretRef):
            env[str(name)] = value
        elif isinstance(value, Mapping):
            if set(value) != {"secret"} or not isinstance(value["secret"], str):
                raise ConfigError(f"{where}: env '{name}' must be a string or {{secret: NAME}}")
            env[str(name)] = SecretRef(value["secret"])
        elif isinstance(value, bool):
            env[str(name)] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            env[str(name)] = str(value)
        elif value is None:
            env[str(name)] = ""
        else:
            raise ConfigError(f"{where}: env '{name}' has unsupported type {type(value).__name__}")
    return env


def _parse_step(raw: Any, where: str) -> Step:
    if isinstance(raw, str):
        return Step(name=raw.splitlines()[0][:60] if raw.strip() else "step", run=raw)
    _expect(raw, Mapping, where, "step")
    data = _normalize_keys(raw, STEP_KEYS, where)

    run = data.get("run")
    uses = data.get("uses")
    if run is not None:
        _expect(run, str, where, "run")
    if uses is not None:
        _expect(uses, str, where, "uses")
    params = data.get("with") or {}
    _expect(params, Mapping, where, "with")

    name = data.get("name")
    if name is None:
        name = uses if uses else (run or "step").strip().splitlines()[0][:60]
    _expect(name, str, where, "name")

    timeout = data.get("timeout")
    if timeout is not None:
        timeout = float(_expect(timeout, (int, float), where, "timeout"))
    retries = data.get("retries", 0)
    _expect(retries, int, where, "retries")
    backoff = data.get("retry_backoff", 1.0)
    _expect(backoff, (int, float), where, "retry_backoff")

    cwd = data.get("cwd")
    if cwd is not None:
        _expect(cwd, str, where, "cwd")

    return Step(
        name=name,
        run=run,
        uses=uses,
        params=dict(params),
        env=_parse_env(data.get("env"), where),
        cwd=cwd,
        continue_on_error=bool(_expect(data.get("continue_on_error", False), bool, where, "continue-on-error")),
        timeout=timeout,
        retries=retries,
        retry_backoff=float(backoff),
    )


def _parse_steps(raw: Any, where: str) -> Tuple[Step, ...]:
    if raw is None:
        return ()
    _expect(raw, (list, tuple), where, "steps")
    return tuple(_parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(raw))


def _parse_job(name: str, raw: Any) -> Job:
    where = f"jobs.{name}"
    if raw is None:
        raw = {}
    _expect(raw, Mapping, where, "job")
    data = _normalize_keys(raw, JOB_KEYS, where)

    mutex = data.get("mutex")
    if mutex is not None:
        _expect(mutex, str, where, "mutex")

    return Job(
        name=name,
        steps=_parse_steps(data.get("steps"), where),
        needs=_str_list(data.get("needs"), where, "needs"),
        runs_on=_expect(data.get("runs_on", "local"), str, where, "runs-on"),
        permissions=_expect(data.get("permissions", "read"), str, where, "permissions"),
        enabled=_expect(data.get("enabled", True), bool, where, "enabled"),
        optional=_expect(data.get("optional", False), bool, where, "optional"),
        mutex=mutex,
        env=_parse_env(data.get("env"), where),
    )


def _parse_trigger(raw: Any) -> Trigger:
    """
    on: push
    on: [push, manual]
    on: {events: [push], branches: [main, "release/*"]}
    on: {push: {branches: [main]}}
    """
    if raw is None:
        return Trigger()
    if isinstance(raw, (str, list, tuple)):
        return Trigger(events=_str_list(raw, "on", "events"))
    _expect(raw, Mapping, "on", "trigger")

    if set(raw) <= {"events", "branches"}:
        return Trigger(
            events=_str_list(raw.get("events", ["push"]), "on", "events"),
            branches=_str_list(raw.get("branches"), "on", "branches"),
        )

    events: List[str] = []
    branches: List[str] = []
    for event, opts in raw.items():
        events.append(str(event))
        if opts is None:
            continue
        _expect(opts, Mapping, f"on.{event}", "event filter")
        unknown = set(opts) - {"branches"}
        if unknown:
            raise ConfigError(f"on.{event}: unknown key(s) {sorted(unknown)}")
        for b in _str_list(opts.get("branches"), f"on.{event}", "branches"):
            if b not in branches:
                branches.append(b)
    return Trigger(events=tuple(events), branches=tuple(branches))


def parse_definition(raw: Mapping[str, Any], *, default_name: str = "pipeline") -> PipelineDefinition:
    """Build an (unvalidated) PipelineDefinition from a parsed document."""
    data = _normalize_keys(raw, PIPELINE_KEYS, "pipeline")

    name = data.get("name", default_name)
    _expect(name, str, "pipeline", "name")

    raw_jobs = data.get("jobs")
    if not raw_jobs:
        raise ConfigError("pipeline: 'jobs' is required and must not be empty")

    jobs: Dict[str, Job] = {}
    if isinstance(raw_jobs, Mapping):
        items = [(str(k), v) for k, v in raw_jobs.items()]
    elif isinstance(raw_jobs, list):
        items = []
        for i, body in enumerate(raw_jobs):
            if not isinstance(body, Mapping) or not isinstance(body.get("name"), str):
                raise ConfigError(f"jobs[{i}]: a job list entry needs a 'name'")
            items.append((body["name"], {k: v for k, v in body.items() if k != "name"}))
    else:
        raise ConfigError("pipeline: 'jobs' must be a mapping or a list")

    for job_name, body in items:
        if job_name in jobs:
            raise ConfigError(f"Duplicate job names found: ['{job_name}']")
        jobs[job_name] = _parse_job(job_name, body)

    return PipelineDefinition(
        name=name,
        jobs=jobs,
        trigger=_parse_trigger(data.get("on")),
        env=_parse_env(data.get("env"), "pipeline"),
        on_failure=_parse_steps(data.get("on_failure"), "on_failure"),
    )


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def _validate_env(env: Mapping[str, EnvValue], where: str) -> None:
    for name, value in env.items():
        if not name or "=" in name:
            raise ConfigError(f"{where}: invalid env var name {name!r}")
        if isinstance(value, SecretRef):
            if not SECRET_NAME_RE.match(value.name or ""):
                raise ConfigError(f"{where}: malformed secret name {value.name!r}")
        else:
            validate_template(value, f"{where}.env.{name}")


def _validate_step(step: Step, where: str, actions: Optional[set]) -> None:
    if bool(step.run) == bool(step.uses):
        raise ConfigError(f"{where}: a step needs exactly one of 'run' or 'uses'")
    if step.uses and actions is not None and step.uses not in actions:
        raise ConfigError(f"{where}: unknown action '{step.uses}'. Known actions: {sorted(actions)}")
    if step.run and step.params:
        raise ConfigError(f"{where}: 'with' only applies to 'uses' steps")
    if step.timeout is not None and step.timeout <= 0:
        raise ConfigError(f"{where}: timeout must be positive")
    if step.retries < 0:
        raise ConfigError(f"{where}: retries must be >= 0")
    if step.retry_backoff < 0:
        raise ConfigError(f"{where}: retry-backoff must be >= 0")
    if step.cwd and (Path(step.cwd).is_absolute() or ".." in Path(step.cwd).parts):
        raise ConfigError(f"{where}: cwd must stay inside the job workspace")
    if step.run:
        validate_template(step.run, f"{where}.run")
    for text in iter_strings(step.params):
        validate_template(text, f"{where}.with")
    _validate_env(step.env, where)


def validate_definition(definition: PipelineDefinition, *, actions: Optional[Iterable[str]] = None) -> None:
    """Raise ConfigError for the first problem found."""
    known = set(actions) if actions is not None else None
    if not definition.jobs:
        raise ConfigError("pipeline: at least one job is required")

    for key, job in definition.jobs.items():
        where = f"jobs.{job.name}"
        if key != job.name:
            raise ConfigError(f"{where}: registered under a different name '{key}'")
        if not JOB_NAME_RE.match(job.name):
            raise ConfigError(f"{where}: invalid job name (letters, digits, '.', '_' and '-' only)")
        if not job.steps:
            raise ConfigError(f"{where}: a job needs at least one step")
        if job.permissions not in PERMISSIONS:
            raise ConfigError(f"{where}: permissions must be one of {list(PERMISSIONS)}")
        _validate_env(job.env, where)
        for i, step in enumerate(job.steps):
            _validate_step(step, f"{where}.steps[{i}]", known)

    for i, step in enumerate(definition.on_failure):
        _validate_step(step, f"on_failure[{i}]", known)
    _validate_env(definition.env, "pipeline")

    if not definition.trigger.events:
        raise ConfigError("on: at least one event type is required")

    build_dag(definition.jobs.values())
    check_acyclic(definition.jobs)
