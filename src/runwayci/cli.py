# cli.py
from __future__ import annotations

import logging
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional

import click
import yaml

from runwayci import settings
from runwayci.dag import plan_batches
from runwayci.engine import PipelineEngine
from runwayci.errors import ConfigError
from runwayci.executor import StepExecutor, known_actions
from runwayci.git_facts.git import current_ref, head_sha, repo_root
from runwayci.loader import load_definition
from runwayci.model import PipelineDefinition, RunStatus, TriggerEvent
from runwayci.scheduler import Scheduler
from runwayci.schemas import parse_event
from runwayci.secrets import EnvSecretStore
from runwayci.store import RunStore, StoreListener
from runwayci.ui.console import Console, ConsoleListener, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

DEFAULT_DEFINITIONS = ("runway.yml", "runway.yaml", ".runway.yml", "pipeline.yml", "runway_workflow.py")


def discover_definition(definition_arg: Optional[str]) -> Path:
    """
    Resolve the definition file from the argument or the defaults.

    Raises:
        SystemExit(2): if no definition can be found
    """
    console = get_console()

    if definition_arg:
        path = Path(definition_arg)
        if not path.exists():
            console.print_error(
                "Definition file not found",
                f"Could not find definition file: {definition_arg}",
                suggestion="Specify a different path:\n  runwayci run --definition pipeline.yml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    found = [Path(name) for name in DEFAULT_DEFINITIONS if Path(name).exists()]
    if not found:
        console.print_error(
            "No definition file found",
            "Could not find a pipeline definition.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_DEFINITIONS)],
            suggestion="Specify one explicitly:\n  runwayci run --definition pipeline.yml",
        )
        sys.exit(EXIT_CONFIG)
    return found[0]


def _load(definition_arg: Optional[str]) -> PipelineDefinition:
    console = get_console()
    path = discover_definition(definition_arg)
    try:
        pipeline = load_definition(path, actions=known_actions())
    except ConfigError as e:
        console.print_error("Invalid pipeline definition", str(e), details=[f"file: {path}"])
        sys.exit(EXIT_CONFIG)
    console.print_debug(f"Loaded {path} ({len(pipeline.jobs)} job(s))")
    return pipeline


def _event_from_file(path: str) -> TriggerEvent:
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"could not read event file {path}: {e.strerror}") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"event file {path} is not valid JSON/YAML: {e}") from None
    return parse_event(raw)


def _event_from_git(event_type: str) -> TriggerEvent:
    """A push-style event for the current local checkout."""
    try:
        root = repo_root()
        return TriggerEvent(event_type=event_type, ref=current_ref(cwd=str(root)), sha=head_sha(cwd=str(root)),
                            repository=str(root))
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise ConfigError(
            "no --event given and the current directory is not a git checkout; "
            "pass --event event.json"
        ) from None


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """runwayci: run CI/CD pipelines of jobs, steps and needs."""
    console = Console(debug=debug)
    set_console(console)
    _configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--definition", default=None, help="Pipeline definition (.yml/.yaml/.json/.py)")
@click.option("--event", "event_path", default=None, help="Trigger event JSON/YAML file (defaults to a push of HEAD)")
@click.option("--event-type", default="push", show_default=True, help="Event type used when --event is omitted")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Max parallel jobs per batch")
@click.option("--workspace", default=settings.WORKSPACE_ROOT, show_default=True, help="Root for job working directories")
@click.option("--db", default=settings.DATABASE_URL, show_default=True, help="Run history database URL")
@click.option("--timeout", default=settings.STEP_TIMEOUT, type=float, show_default=True, help="Default step timeout (s)")
@click.option("--fail-fast/--no-fail-fast", default=True, help="Stop dispatching batches after a required job fails")
@click.option("--keep-workspaces/--no-keep-workspaces", default=settings.KEEP_WORKSPACES, help="Keep job directories")
@click.option("--show-output", is_flag=True, default=False, help="Print captured output of every step")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print batches before running")
@click.pass_context
def run(ctx, definition, event_path, event_type, workers, workspace, db, timeout, fail_fast,
        keep_workspaces, show_output, print_plan):
    """Run a pipeline for one trigger event."""
    console = get_console()
    console.show_output = show_output
    pipeline = _load(definition)

    try:
        event = _event_from_file(event_path) if event_path else _event_from_git(event_type)
    except ConfigError as e:
        console.print_error("Invalid trigger event", str(e))
        sys.exit(EXIT_CONFIG)

    store = RunStore(db)
    scheduler = Scheduler(
        StepExecutor(default_timeout=timeout),
        workspace_root=workspace,
        max_workers=workers,
        fail_fast=fail_fast,
    )
    history = StoreListener(store)
    engine = PipelineEngine(
        scheduler,
        secret_store=EnvSecretStore(),
        listeners=[ConsoleListener(console), history],
        keep_workspaces=keep_workspaces,
    )

    try:
        active = engine.create_run(pipeline, event)
        if active is None:
            console.print_info(
                f"Trigger did not match ({event.event_type} on {event.ref}); nothing to run."
            )
            sys.exit(EXIT_OK)

        if print_plan:
            console.print_plan(scheduler.plan(pipeline))

        def _cancel(signum: int) -> None:
            console.print_info(f"\nReceived {signal.Signals(signum).name}, cancelling run {active.id}")
            engine.cancel(active)

        def _on_signal(signum, frame):
            # never block inside the handler: the main thread may hold the store or print lock
            threading.Thread(target=_cancel, args=(signum,), daemon=True).start()

        previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            status = engine.execute(active)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        console.print_results({name: s.value for name, s in active.statuses().items()})
        console.print_info(f"Run {active.id}: {status.value}")
        if history.lost:
            console.print_error(
                "Run history incomplete",
                f"{len(history.lost)} event(s) of run {active.id} could not be written to the run database.",
                details=[kind for _, kind in history.lost],
            )
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        store.close()

    if status == RunStatus.SUCCEEDED:
        sys.exit(EXIT_OK)
    if status == RunStatus.CANCELLED:
        sys.exit(EXIT_CANCELLED)
    sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--definition", default=None, help="Pipeline definition (.yml/.yaml/.json/.py)")
def validate(definition):
    """Validate a definition and print its execution plan (nothing runs)."""
    console = get_console()
    pipeline = _load(definition)
    console.print_info(f"Pipeline '{pipeline.name}' is valid ({len(pipeline.jobs)} job(s)).")
    trigger = pipeline.trigger
    branches = ", ".join(trigger.branches) if trigger.branches else "any branch"
    console.print_info(f"Trigger: {', '.join(trigger.events)} on {branches}")
    console.print_plan(plan_batches(pipeline))


@cli.group()
def runs():
    """Inspect persisted runs."""


@runs.command("list")
@click.option("--db", default=settings.DATABASE_URL, show_default=True, help="Run history database URL")
@click.option("--limit", default=20, show_default=True, type=int)
def list_runs(db, limit):
    """List recent runs, newest first."""
    console = get_console()
    store = RunStore(db)
    try:
        records = store.list_runs(limit=limit)
    finally:
        store.close()
    if not records:
        console.print_info("No runs recorded.")
        return
    for r in records:
        created = r.created_at.strftime("%Y-%m-%d %H:%M:%S") if r.created_at else "-"
        ref = r.event.get("ref", "")
        console.print_info(f"{r.id}  {created}  {r.status:<10} {r.pipeline}  {ref}")


@runs.command("show")
@click.argument("run_id")
@click.option("--db", default=settings.DATABASE_URL, show_default=True, help="Run history database URL")
@click.option("--logs", is_flag=True, default=False, help="Include captured (redacted) step output")
def show_run(run_id, db, logs):
    """Show a run's status and its per-job / per-step trail."""
    console = get_console()
    store = RunStore(db)
    try:
        record = store.load(run_id)
    finally:
        store.close()
    if record is None:
        console.print_error("Run not found", f"No run with id {run_id}")
        sys.exit(EXIT_FAILED)

    console.print_header(f"Run {record.id}")
    console.print_info(f"Pipeline: {record.pipeline}")
    console.print_info(f"Event: {record.event.get('event_type', '')} {record.event.get('ref', '')} "
                       f"{record.event.get('sha', '')}".rstrip())
    reason = f" ({record.reason})" if record.reason else ""
    console.print_info(f"Status: {record.status}{reason}")

    for job in record.jobs.values():
        reason = f" ({job.reason})" if job.reason else ""
        console.print_info(f"\n  {job.name}: {job.status}{reason}")
        for step in job.steps:
            _show_step(console, step, logs)
    if record.cleanup:
        console.print_info("\n  on_failure:")
        for step in record.cleanup:
            _show_step(console, step, logs)


def _show_step(console: Console, step: dict, logs: bool) -> None:
    exit_code = step.get("exit_code")
    code = f" exit={exit_code}" if exit_code is not None else ""
    console.print_info(f"    - {step.get('name')}: {step.get('status')}{code}")
    if step.get("error") and step.get("status") != "succeeded":
        console.print_info(f"      error: {step['error']}")
    if logs:
        for stream in ("stdout", "stderr"):
            text = (step.get(stream) or "").rstrip()
            if text:
                console.print_info(f"      --- {stream} ---")
                for line in text.splitlines():
                    console.print_info(f"      {line}")


@cli.command()
@click.option("--definition", default=None, help="Pipeline definition (.yml/.yaml/.json/.py)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--db", default=settings.DATABASE_URL, show_default=True, help="Run history database URL")
@click.option("--workspace", default=settings.WORKSPACE_ROOT, show_default=True, help="Root for job working directories")
def serve(definition, host, port, db, workspace):
    """Serve the trigger/audit HTTP API for one definition."""
    import uvicorn

    from runwayci.api import create_app

    console = get_console()
    pipeline = _load(definition)
    store = RunStore(db)
    engine = PipelineEngine(
        Scheduler(workspace_root=workspace),
        secret_store=EnvSecretStore(),
        listeners=[StoreListener(store)],
    )
    console.print_info(f"Serving pipeline '{pipeline.name}' on http://{host}:{port}")
    uvicorn.run(create_app(engine, pipeline, store), host=host, port=port)


if __name__ == "__main__":
    cli()
