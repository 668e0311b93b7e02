"""Shared fixtures for the runwayci test suite."""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from runwayci.engine import PipelineEngine
from runwayci.executor import ActionContext, ProcessOutput, StepExecutor
from runwayci.model import TriggerEvent
from runwayci.scheduler import Scheduler
from runwayci.secrets import MappingSecretStore
from runwayci.store import RunStore, StoreListener


class FakeRunner:
    """
    Stands in for a collaborator CLI. `responses` maps an argv prefix
    (tuple) to a ProcessOutput; unmatched commands succeed with no output.
    """

    def __init__(self, responses: Optional[Dict[tuple, ProcessOutput]] = None):
        self.responses = dict(responses or {})
        self.calls: List[List[str]] = []
        self.envs: List[dict] = []

    def __call__(self, args, *, env=None, cwd=None) -> ProcessOutput:
        args = list(args)
        self.calls.append(args)
        self.envs.append(dict(env or {}))
        best = None
        for prefix, out in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best[0])):
                best = (prefix, out)
        return best[1] if best else ProcessOutput(0, "", "")

    def verbs(self) -> List[str]:
        return [c[1] for c in self.calls if len(c) > 1]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def patch_action_runner(monkeypatch) -> Callable[[FakeRunner], FakeRunner]:
    """Route every ActionContext.run_command through a FakeRunner."""

    def _install(runner: FakeRunner) -> FakeRunner:
        def run_command(self, args, *, env=None, cwd=None):
            return runner(args, env=env, cwd=cwd)

        monkeypatch.setattr(ActionContext, "run_command", run_command)
        return runner

    return _install


@pytest.fixture
def push_main() -> TriggerEvent:
    return TriggerEvent(event_type="push", ref="refs/heads/main", sha="a" * 40, repository="/tmp/repo")


@pytest.fixture
def store() -> RunStore:
    s = RunStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def make_scheduler(tmp_path: Path) -> Callable[..., Scheduler]:
    def _make(**kwargs) -> Scheduler:
        kwargs.setdefault("workspace_root", tmp_path / "work")
        kwargs.setdefault("base_env", {"PATH": "/usr/bin:/bin:/usr/local/bin"})
        executor = kwargs.pop("executor", None) or StepExecutor(default_timeout=30, kill_grace=0.5)
        return Scheduler(executor, **kwargs)

    return _make


@pytest.fixture
def make_engine(make_scheduler, store) -> Callable[..., PipelineEngine]:
    def _make(*, secrets: Optional[dict] = None, listeners=None, keep_workspaces: bool = False,
              **scheduler_kwargs) -> PipelineEngine:
        return PipelineEngine(
            make_scheduler(**scheduler_kwargs),
            secret_store=MappingSecretStore(secrets or {}),
            listeners=[StoreListener(store), *(listeners or [])],
            keep_workspaces=keep_workspaces,
        )

    return _make
