"""Tests for the append-only run history."""
from __future__ import annotations

import logging

from sqlalchemy.exc import OperationalError

from runwayci.dsl import job, pipeline, sh
from runwayci.engine import PipelineEngine
from runwayci.model import RunStatus, TriggerEvent
from runwayci.store import RunStore, StoreListener


class TestRunStore:
    def test_sequence_numbers_are_per_run(self, store):
        assert store.append("r1", "run.created", payload={"pipeline": "p"}) == 1
        assert store.append("r1", "run.status", payload={"status": "running"}) == 2
        assert store.append("r2", "run.created", payload={"pipeline": "q"}) == 1
        assert [e.kind for e in store.events("r1")] == ["run.created", "run.status"]

    def test_load_replays_events(self, store):
        store.append("r1", "run.created", payload={"pipeline": "p", "event": {"ref": "refs/heads/main"},
                                                   "jobs": ["a", "b"]})
        store.append("r1", "run.status", payload={"status": "running", "reason": None})
        store.append("r1", "job.status", job="a", payload={"status": "failed", "reason": "step 'x' failed"})
        store.append("r1", "step.finished", job="a", step="x", payload={"name": "x", "status": "failed"})
        store.append("r1", "run.status", payload={"status": "failed", "reason": "required job(s) failed: a"})
        store.append("r1", "cleanup.step", step="notify", payload={"name": "notify", "status": "succeeded"})

        record = store.load("r1")
        assert record.pipeline == "p"
        assert record.status == "failed"
        assert record.reason == "required job(s) failed: a"
        assert record.jobs["a"].status == "failed"
        assert record.jobs["a"].steps == [{"name": "x", "status": "failed"}]
        assert record.jobs["b"].status == "pending"
        assert record.cleanup == [{"name": "notify", "status": "succeeded"}]

    def test_unknown_run(self, store):
        assert store.load("missing") is None

    def test_list_runs_newest_first(self, store):
        for run_id in ("old", "mid", "new"):
            store.append(run_id, "run.created", payload={"pipeline": run_id})
        assert [r.id for r in store.list_runs()] == ["new", "mid", "old"]
        assert [r.id for r in store.list_runs(limit=1)] == ["new"]

    def test_file_database_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'nested' / 'runs.db'}"
        first = RunStore(url)
        first.append("r1", "run.created", payload={"pipeline": "p"})
        first.close()
        second = RunStore(url)
        try:
            assert second.load("r1").pipeline == "p"
        finally:
            second.close()


class TestStoreListener:
    """The engine writes a complete, replayable trail."""

    def test_trail_of_failed_run(self, make_engine, store):
        definition = pipeline(
            "p",
            job("test", sh("unit", "echo ran; exit 1")),
            job("deploy", sh("ship", "true"), needs="test"),
            on_failure=[sh("notify", "echo cleanup")],
        )
        run = make_engine().run(definition, TriggerEvent("push", "refs/heads/main", sha="b" * 40))
        assert run.status == RunStatus.FAILED

        record = store.load(run.id)
        assert record.pipeline == "p"
        assert record.event["sha"] == "b" * 40
        assert record.status == "failed"
        assert record.jobs["test"].status == "failed"
        assert record.jobs["test"].steps[0]["stdout"] == "ran\n"
        assert record.jobs["test"].steps[0]["exit_code"] == 1
        assert record.jobs["deploy"].status == "skipped"
        assert record.jobs["deploy"].reason == "needs not satisfied: test (failed)"
        assert record.cleanup[0]["stdout"] == "cleanup\n"

        statuses = [e.payload["status"] for e in store.events(run.id) if e.kind == "run.status"]
        assert statuses == ["triggered", "running", "failed"]

    def test_untriggered_run_leaves_no_trail(self, make_engine, store):
        definition = pipeline("p", job("a", sh("x", "true")), events=["manual"])
        assert make_engine().run(definition, TriggerEvent("push", "refs/heads/main")) is None
        assert store.list_runs() == []


class FailingStore(RunStore):
    """Raises a database error for the first `failures` appends."""

    def __init__(self, failures):
        super().__init__("sqlite://")
        self.failures = failures

    def append(self, run_id, kind, **kwargs):
        if self.failures:
            self.failures -= 1
            raise OperationalError("INSERT INTO run_events", {}, Exception("database is locked"))
        return super().append(run_id, kind, **kwargs)


class TestStoreWriteFailures:
    """History writes never change a run's outcome, but a lost event is reported."""

    def _run(self, make_scheduler, store):
        listener = StoreListener(store, retries=2, retry_delay=0.01)
        engine = PipelineEngine(make_scheduler(), listeners=[listener])
        run = engine.run(pipeline("p", job("a", sh("x", "true"))), TriggerEvent("push", "refs/heads/main"))
        return run, listener

    def test_transient_error_is_retried(self, make_scheduler):
        store = FailingStore(failures=2)
        try:
            run, listener = self._run(make_scheduler, store)
            assert run.status == RunStatus.SUCCEEDED
            assert listener.lost == []
            assert store.load(run.id).status == "succeeded"
        finally:
            store.close()

    def test_persistent_error_is_logged_and_recorded(self, make_scheduler, caplog):
        store = FailingStore(failures=10 ** 6)
        try:
            with caplog.at_level(logging.ERROR, logger="runwayci.store"):
                run, listener = self._run(make_scheduler, store)
            assert run.status == RunStatus.SUCCEEDED
            assert (run.id, "run.created") in listener.lost
            assert [kind for _, kind in listener.lost].count("run.status") == 3
            assert any("run.created event lost" in r.getMessage() for r in caplog.records)
            assert store.load(run.id) is None
        finally:
            store.close()
