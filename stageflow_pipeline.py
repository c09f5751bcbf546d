# stageflow_pipeline.py
# Pipeline for stageflow itself: lint and test on every push, build an
# image, then deploy to staging and (with two approvals) production.
from __future__ import annotations

from stageflow import best_effort, deploy, environment, flow, matrix, stage

IMAGE = "registry.example.com/stageflow:{short_commit}"


def pipeline():
    return flow(
        stage("lint", "ruff check src tests"),
        matrix("py", ["3.11", "3.12"]).stages(
            lambda v: stage(
                f"test-py{v.replace('.', '')}",
                "pip install -e '.[test]' && pytest -q",
                container=f"python:{v}-slim",
                retries=2,
            )
        ),
        best_effort(stage("audit", "pip-audit", needs=["lint"])),
        stage(
            "build",
            'docker build -t "registry.example.com/stageflow:$STAGEFLOW_SHORT_COMMIT" .',
            needs=["test-py311", "test-py312"],
            concurrency_group="docker",
            branches=["main"],
        ),
        deploy("deploy-staging", "staging", IMAGE, needs=["build"], branches=["main"]),
        deploy(
            "deploy-production",
            "production",
            IMAGE,
            needs=["deploy-staging"],
            branches=["main"],
            events=["push", "manual"],
        ),
        environments=[
            environment(
                "staging",
                target={
                    "namespace": "staging",
                    "deployment": "stageflow",
                    "container": "app",
                    "url": "https://staging.example.com",
                },
            ),
            environment(
                "production",
                required_reviewers=2,
                wait_timer=300,
                prevent_self_review=True,
                target={
                    "namespace": "production",
                    "deployment": "stageflow",
                    "container": "app",
                    "url": "https://example.com",
                },
            ),
        ],
        settings={"stage_timeout": 900, "workers": 4},
        name="stageflow",
    )
