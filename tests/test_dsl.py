from __future__ import annotations

import pytest

from runwayci.dsl import build, job, matrix, pipeline, secret, sh, uses, wf
from runwayci.model import SecretRef, Trigger


class TestJobHelpers:
    def test_job_with_single_need_and_default_cwd(self):
        j = job("test", sh("unit", "pytest"), sh("docs", "make", cwd="docs"), needs="build", cwd="src")
        assert j.needs == ("build",)
        assert [s.cwd for s in j.steps] == ["src", "docs"]

    def test_steps_list_comes_first(self):
        j = job("x", sh("b", "true"), steps_list=[sh("a", "true")])
        assert [s.name for s in j.steps] == ["a", "b"]

    def test_job_without_steps(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_uses_step(self):
        step = uses("scan", "sonar-scan", {"project_key": "app"}, retries=2)
        assert step.kind == "uses"
        assert step.params == {"project_key": "app"}
        assert step.retries == 2


class TestBuilder:
    def test_fluent_builder(self):
        j = (
            build("deploy")
            .depends_on("scan", "test")
            .define_step("ship", "make deploy", timeout=60)
            .define_action("clean", "docker-cleanup", containers="name=app")
            .with_env(TOKEN=secret("DEPLOY_TOKEN"), REPLICAS=3)
            .on_runner("self-hosted")
            .with_permissions("write")
            .exclusive("docker-host")
            .build()
        )
        assert j.needs == ("scan", "test")
        assert j.steps[0].timeout == 60
        assert j.steps[1].params == {"containers": "name=app"}
        assert j.env == {"TOKEN": SecretRef("DEPLOY_TOKEN"), "REPLICAS": "3"}
        assert (j.runs_on, j.permissions, j.mutex) == ("self-hosted", "write", "docker-host")

    def test_disable_and_allow_failure(self):
        j = build("x").define_step("s", "true").disable().allow_failure().build()
        assert j.enabled is False
        assert j.optional is True

    def test_builder_without_steps(self):
        with pytest.raises(ValueError, match="no steps"):
            build("x").build()


class TestPipeline:
    def test_matrix_jobs_are_flattened(self):
        jobs = matrix("py", ["3.11", "3.12"]).jobs(lambda v: job(f"test-py{v}", sh("t", f"python{v} -V")))
        flat = wf(job("lint", sh("l", "true")), jobs)
        assert [j.name for j in flat] == ["lint", "test-py3.11", "test-py3.12"]

    def test_pipeline_trigger_and_order(self):
        p = pipeline("ci", job("b", sh("x", "true")), job("a", sh("x", "true")), branches=["main"],
                     events=["push", "manual"])
        assert p.job_names == ["b", "a"]
        assert p.trigger == Trigger(events=("push", "manual"), branches=("main",))

    def test_duplicate_job_names(self):
        with pytest.raises(ValueError, match="Duplicate job name"):
            pipeline("ci", job("a", sh("x", "true")), job("a", sh("y", "true")))
