"""End-to-end run scenarios through PipelineEngine + Scheduler."""
from __future__ import annotations

import threading
import time
import types

import pytest
from transitions import MachineError

from runwayci.dsl import job, pipeline, secret, sh
from runwayci.engine import PipelineEngine, create_run_machine
from runwayci.events import RunListener
from runwayci.executor import ProcessOutput
from runwayci.model import JobStatus, Run, RunStatus, StepStatus, TriggerEvent
from runwayci.step_workflows.docker import docker_cleanup_step

from .conftest import FakeRunner


class Recorder(RunListener):
    def __init__(self):
        self.statuses = []
        self.started = []
        self.batches = []
        self.cleanup = []

    def run_status(self, run, status, reason=None):
        self.statuses.append(status)

    def job_started(self, run, job):
        self.started.append(job.name)

    def batch_finished(self, run, index, names):
        self.batches.append(list(names))

    def cleanup_step(self, run, result):
        self.cleanup.append(result)


class TestLifecycle:
    """State machine transitions for a Run."""

    def test_trigger_mismatch_discards_run(self, make_engine):
        engine = make_engine()
        definition = pipeline("p", job("a", sh("x", "true")), branches=["main"])
        assert engine.create_run(definition, TriggerEvent("push", "refs/heads/feature")) is None
        assert engine.create_run(definition, TriggerEvent("pull_request", "refs/heads/main")) is None
        assert engine.active_runs() == []

    def test_status_sequence_on_success(self, make_engine, push_main):
        recorder = Recorder()
        engine = make_engine(listeners=[recorder])
        run = engine.run(pipeline("p", job("a", sh("x", "true"))), push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert recorder.statuses == [RunStatus.TRIGGERED, RunStatus.RUNNING, RunStatus.SUCCEEDED]
        assert run.started_at is not None and run.finished_at >= run.started_at

    def test_no_transitions_out_of_terminal_states(self, push_main):
        run = Run(definition=pipeline("p", job("a", sh("x", "true"))), event=push_main)
        create_run_machine(run)
        assert run.accept()
        run.begin()
        run.succeed()
        with pytest.raises(MachineError):
            run.cancel()
        with pytest.raises(MachineError):
            run.fail()

    def test_cancel_before_execute(self, make_engine, push_main):
        engine = make_engine()
        run = engine.create_run(pipeline("p", job("a", sh("x", "touch ran"))), push_main)
        assert engine.cancel(run.id)
        assert engine.execute(run) == RunStatus.CANCELLED
        assert run.job_status("a") == JobStatus.SKIPPED

    def test_cancel_unknown_or_finished(self, make_engine, push_main):
        engine = make_engine()
        assert engine.cancel("nope") is False
        run = engine.run(pipeline("p", job("a", sh("x", "true"))), push_main)
        assert engine.cancel(run) is False
        assert run.status == RunStatus.SUCCEEDED


class TestFailurePropagation:
    """step failure -> job failure -> dependents skipped -> run failed."""

    def test_failed_test_skips_deploy(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("test", sh("unit", "exit 1")),
            job("deploy", sh("ship", "touch shipped"), needs="test"),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.FAILED
        assert run.job_status("test") == JobStatus.FAILED
        assert run.job_status("deploy") == JobStatus.SKIPPED
        assert "needs not satisfied: test (failed)" in run.job_results["deploy"].reason
        assert run.job_results["deploy"].steps == []

    def test_skips_propagate_transitively(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("x", "false")),
            job("b", sh("x", "true"), needs="a"),
            job("c", sh("x", "true"), needs="b"),
        )
        run = make_engine(fail_fast=False).run(definition, push_main)
        assert run.statuses() == {"a": JobStatus.FAILED, "b": JobStatus.SKIPPED, "c": JobStatus.SKIPPED}

    def test_first_failing_step_aborts_job(self, make_engine, push_main):
        definition = pipeline("p", job("a", sh("one", "true"), sh("two", "exit 2"), sh("three", "true")))
        run = make_engine().run(definition, push_main)
        steps = run.job_results["a"].steps
        assert [s.status for s in steps] == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]

    def test_continue_on_error_keeps_job_green(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("lint", "exit 1", continue_on_error=True), sh("build", "true")),
            job("b", sh("x", "true"), needs="a"),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.job_results["a"].steps[0].failed
        assert run.job_status("b") == JobStatus.SUCCEEDED

    def test_optional_job_failure_does_not_fail_run(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("flaky", sh("x", "false"), optional=True),
            job("after", sh("x", "true"), needs="flaky"),
            job("main", sh("x", "true")),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.job_status("after") == JobStatus.SKIPPED

    def test_same_batch_jobs_finish_before_run_fails(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("fast-fail", sh("x", "exit 1")),
            job("slow", sh("x", "sleep 0.5; touch done")),
            job("later", sh("x", "true"), needs="slow"),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.FAILED
        assert run.job_status("slow") == JobStatus.SUCCEEDED
        assert run.job_status("later") == JobStatus.SKIPPED
        assert run.job_results["later"].reason == "fail-fast: run failed"

    def test_no_fail_fast_keeps_independent_jobs_running(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("x", "false")),
            job("b", sh("x", "true")),
            job("c", sh("x", "true"), needs="b"),
        )
        run = make_engine(fail_fast=False).run(definition, push_main)
        assert run.status == RunStatus.FAILED
        assert run.job_status("c") == JobStatus.SUCCEEDED

    def test_disabled_job_and_dependents_skipped(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("scan", sh("x", "true")),
            job("deploy", sh("x", "true"), needs="scan", enabled=False),
            job("notify", sh("x", "true"), needs="deploy"),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.job_results["deploy"].reason == "disabled"
        assert run.job_status("notify") == JobStatus.SKIPPED

    def test_unknown_runner_class_fails_job(self, make_engine, push_main):
        definition = pipeline("p", job("gpu", sh("x", "true"), runs_on="gpu-box"))
        run = make_engine(runner_classes=("local",)).run(definition, push_main)
        assert run.status == RunStatus.FAILED
        assert "no runner offers class 'gpu-box'" in run.job_results["gpu"].reason

    def test_on_failure_cleanup_runs_all_steps(self, make_engine, push_main, tmp_path):
        recorder = Recorder()
        marker = tmp_path / "cleaned"
        definition = pipeline(
            "p",
            job("a", sh("x", "false")),
            on_failure=[sh("broken", "exit 1"), sh("clean", f"touch {marker}")],
        )
        run = make_engine(listeners=[recorder]).run(definition, push_main)
        assert run.status == RunStatus.FAILED
        assert marker.exists()
        assert [r.name for r in run.cleanup_results] == ["broken", "clean"]
        assert [r.name for r in recorder.cleanup] == ["broken", "clean"]

    def test_on_failure_not_run_on_success(self, make_engine, push_main, tmp_path):
        marker = tmp_path / "cleaned"
        definition = pipeline("p", job("a", sh("x", "true")), on_failure=[sh("clean", f"touch {marker}")])
        make_engine().run(definition, push_main)
        assert not marker.exists()


class TestCancellation:
    """Cancelling between batches and during a step."""

    def test_cancel_after_first_batch(self, make_engine, push_main):
        class CancelAfterFirst(RunListener):
            engine: PipelineEngine = None

            def batch_finished(self, run, index, names):
                if index == 0:
                    self.engine.cancel(run)

        hook = CancelAfterFirst()
        engine = make_engine(listeners=[hook])
        hook.engine = engine
        definition = pipeline(
            "p",
            job("build", sh("x", "true")),
            job("lint", sh("x", "true")),
            job("deploy", sh("x", "true"), needs=["build", "lint"]),
        )
        run = engine.run(definition, push_main)
        assert run.status == RunStatus.CANCELLED
        assert run.job_status("build") == JobStatus.SUCCEEDED
        assert run.job_status("lint") == JobStatus.SUCCEEDED
        assert run.job_status("deploy") == JobStatus.SKIPPED
        assert run.job_results["deploy"].reason == "run cancelled"

    def test_cancel_terminates_running_step(self, make_engine, push_main):
        engine = make_engine()
        definition = pipeline("p", job("long", sh("sleep", "sleep 30"), sh("after", "true")))
        run = engine.create_run(definition, push_main)
        threading.Timer(0.3, engine.cancel, args=(run,)).start()
        started = time.monotonic()
        assert engine.execute(run) == RunStatus.CANCELLED
        assert time.monotonic() - started < 10
        steps = run.job_results["long"].steps
        assert steps[0].error == "Step cancelled"
        assert steps[1].status == StepStatus.SKIPPED

    def test_cancel_racing_run_start(self, make_engine, push_main, monkeypatch):
        engine = make_engine()
        run = engine.create_run(pipeline("p", job("a", sh("x", "true"))), push_main)
        real_time = time.time
        calls = []

        def cancel_on_first_call():
            if not calls:
                engine.cancel(run)
            calls.append(1)
            return real_time()

        # the cancel lands after execute() is entered but before the run begins
        monkeypatch.setattr("runwayci.engine.time", types.SimpleNamespace(time=cancel_on_first_call))
        assert engine.execute(run) == RunStatus.CANCELLED
        assert run.job_status("a") == JobStatus.SKIPPED
        assert run.job_results["a"].reason == "run cancelled"


class TestSecretsAndEnvironment:
    """Secrets are injected per step and never leak into results or the store."""

    def test_secret_injected_and_redacted(self, make_engine, push_main, store):
        definition = pipeline(
            "p",
            job(
                "deploy",
                sh("env", "echo token=$TOKEN", env={"TOKEN": secret("DEPLOY_TOKEN")}),
                sh("tmpl", "echo inline=${{ secrets.DEPLOY_TOKEN }} >&2"),
            ),
        )
        run = make_engine(secrets={"DEPLOY_TOKEN": "hunter2"}).run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        steps = run.job_results["deploy"].steps
        assert steps[0].stdout == "token=***\n"
        assert steps[1].stderr == "inline=***\n"
        for ev in store.events(run.id):
            assert "hunter2" not in str(ev.payload)

    def test_missing_secret_fails_step_without_running_it(self, make_engine, push_main, tmp_path):
        marker = tmp_path / "ran"
        definition = pipeline(
            "p",
            job("a", sh("needs-secret", f"touch {marker}", env={"K": secret("ABSENT")}, retries=3)),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.FAILED
        step = run.job_results["a"].steps[0]
        assert step.error == "Secret not found: ABSENT"
        assert step.attempts == 0
        assert not marker.exists()

    def test_secret_store_variables_not_inherited(self, make_scheduler, push_main):
        engine = PipelineEngine(
            make_scheduler(base_env={"PATH": "/usr/bin:/bin", "RUNWAY_SECRET_X": "leak", "KEEP": "me"}),
        )
        definition = pipeline("p", job("a", sh("env", "echo ${RUNWAY_SECRET_X:-none} $KEEP")))
        run = engine.run(definition, push_main)
        assert run.job_results["a"].steps[0].stdout == "none me\n"

    def test_ci_variables_and_templates(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("vars", "echo $RUNWAY_JOB $RUNWAY_BRANCH $RUNWAY_PERMISSIONS ${{ run.sha }}"),
                permissions="write"),
        )
        run = make_engine().run(definition, push_main)
        assert run.job_results["a"].steps[0].stdout == f"a main write {'a' * 40}\n"

    def test_event_values_are_quoted_in_commands(self, make_engine, tmp_path):
        marker = tmp_path / "injected"
        event = TriggerEvent("push", "refs/heads/main", sha=f"abc; touch {marker}")
        definition = pipeline("p", job("build", sh("show", "echo building ${{ run.sha }}")))
        run = make_engine().run(definition, event)
        assert run.status == RunStatus.SUCCEEDED
        assert run.job_results["build"].steps[0].stdout == f"building abc; touch {marker}\n"
        assert not marker.exists()

    def test_env_layers_override_in_order(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("env", "echo $LEVEL-$JOBONLY", env={"LEVEL": "step"}), env={"LEVEL": "job", "JOBONLY": "j"}),
            env={"LEVEL": "pipeline"},
        )
        run = make_engine().run(definition, push_main)
        assert run.job_results["a"].steps[0].stdout == "step-j\n"


class TestWorkspaces:
    """Isolated working directories per job."""

    def test_jobs_get_separate_directories(self, make_engine, push_main):
        definition = pipeline(
            "p",
            job("a", sh("w", "echo a > f; pwd")),
            job("b", sh("w", "test ! -f f && pwd")),
        )
        run = make_engine(keep_workspaces=True).run(definition, push_main)
        a_dir = run.job_results["a"].steps[0].stdout.strip()
        b_dir = run.job_results["b"].steps[0].stdout.strip()
        assert run.status == RunStatus.SUCCEEDED
        assert a_dir != b_dir
        assert a_dir.endswith(f"{run.id}/a")

    def test_workspace_removed_after_run(self, make_engine, push_main):
        engine = make_engine()
        run = engine.run(pipeline("p", job("a", sh("w", "touch x"))), push_main)
        assert not (engine.scheduler.workspace_root / run.id).exists()

    def test_mutex_jobs_never_overlap(self, make_engine, push_main, tmp_path):
        log = tmp_path / "log"
        body = f"echo start >> {log}; sleep 0.3; echo end >> {log}"
        definition = pipeline(
            "p",
            job("deploy-a", sh("d", body), mutex="docker-host"),
            job("deploy-b", sh("d", body), mutex="docker-host"),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert log.read_text().split() == ["start", "end", "start", "end"]


class TestCleanupScenario:
    """Deploy-style cleanup through the docker-cleanup action."""

    def test_cleanup_of_zero_containers_succeeds(self, make_engine, push_main, patch_action_runner):
        runner = patch_action_runner(FakeRunner({("docker", "ps"): ProcessOutput(0, "", "")}))
        definition = pipeline(
            "p",
            job("test", sh("unit", "true")),
            job(
                "deploy",
                docker_cleanup_step("cleanup", containers=["name=app"]),
                needs="test",
                mutex="docker-host",
            ),
        )
        run = make_engine().run(definition, push_main)
        assert run.status == RunStatus.SUCCEEDED
        assert run.job_results["deploy"].steps[0].stdout == "Removed 0 container(s)\n"
        assert runner.verbs() == ["ps"]
