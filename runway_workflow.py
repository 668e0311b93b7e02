# runway_workflow.py
# Pipeline for runwayci itself: lint and test in parallel, then a packaging check.
from __future__ import annotations

from runwayci.dsl import job, matrix, pipeline, sh
from runwayci.step_workflows.checkout import checkout_step
from runwayci.step_workflows.docker import docker_cleanup_step


def pipeline_definition():
    return pipeline(
        "runwayci",
        job(
            "lint",
            checkout_step(),
            sh("Ruff check", "ruff check src tests", continue_on_error=True),
        ),
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(
                f"test-py{v}",
                checkout_step(),
                sh("Install", f"python{v} -m pip install -e '.[test]'", retries=2, retry_backoff=5),
                sh("Run pytest", f"python{v} -m pytest -q", timeout=900),
            )
        ),
        job(
            "package",
            checkout_step(),
            sh("Build wheel", "python -m pip wheel --no-deps -w dist ."),
            needs=["lint", "test-py3.11", "test-py3.12"],
        ),
        events=["push", "manual"],
        on_failure=[docker_cleanup_step("Remove test containers", containers=["label=runwayci-test"])],
    )


PIPELINE = pipeline_definition()
