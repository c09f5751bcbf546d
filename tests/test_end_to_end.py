from __future__ import annotations

import pytest

from stageflow import RunStatus, StageStatus, deploy, environment, stage
from stageflow.errors import ApprovalError, UnknownRunError

from fakes import FakeExecutor, FakeOrchestrator, fast_flow, push, wait_until

IMAGE = "registry.local/shop:{commit}"


def shop_pipeline(**settings):
    return fast_flow(
        stage("test-backend", "pytest backend"),
        stage("test-frontend", "npm test"),
        stage("build", "docker build .", needs=["test-backend", "test-frontend"]),
        deploy("deploy-staging", "staging", IMAGE, needs=["build"], branches=["main"]),
        deploy("deploy-production", "production", IMAGE, needs=["deploy-staging"], branches=["main"]),
        environments=[
            environment("staging"),
            environment("production", required_reviewers=2, prevent_self_review=True),
        ],
        **settings,
    )


def waiting(svc, run_id, stage_id):
    return svc.get_run_status(run_id).stage(stage_id).status is StageStatus.WAITING


def test_push_to_main_deploys_through_gated_production(make_service, orchestrator):
    svc = make_service(shop_pipeline())
    run = svc.submit(push(commit="abc123", actor="alice")).run

    assert wait_until(lambda: waiting(svc, run.id, "deploy-production"))
    staging = svc.registry.get("staging")
    assert staging.current == "registry.local/shop:abc123"
    assert svc.registry.get("production").current is None

    with pytest.raises(ApprovalError):
        svc.approve(run.id, "production", "alice")

    first = svc.approve(run.id, "production", "bob")
    assert first["required"] == 2
    assert waiting(svc, run.id, "deploy-production")

    svc.approve(run.id, "production", "carol")
    summary = svc.wait(run.id, 5)

    assert summary.status is RunStatus.SUCCEEDED
    assert all(s.status is StageStatus.SUCCEEDED for s in summary.stages.values())
    assert svc.registry.get("production").current == "registry.local/shop:abc123"
    assert [d.environment for d in summary.deployments] == ["staging", "production"]
    assert orchestrator.set_calls == [
        ("staging", "registry.local/shop:abc123"),
        ("production", "registry.local/shop:abc123"),
    ]

    envs = {e["name"]: e for e in svc.list_environments()}
    assert envs["production"]["current_reference"] == "registry.local/shop:abc123"


def test_feature_branch_skips_deploys(make_service, orchestrator):
    svc = make_service(shop_pipeline())
    run = svc.submit(push(ref="refs/heads/feature/cart", commit="f00")).run
    summary = svc.wait(run.id, 5)

    assert summary.status is RunStatus.SUCCEEDED
    assert summary.stage("build").status is StageStatus.SUCCEEDED
    assert summary.stage("deploy-staging").status is StageStatus.SKIPPED
    assert summary.stage("deploy-production").status is StageStatus.SKIPPED
    assert orchestrator.set_calls == []


def test_failed_test_stops_the_release(make_service, orchestrator):
    ex = FakeExecutor(exits={"npm test": [1]})
    svc = make_service(shop_pipeline(), executor=ex)
    summary = svc.wait(svc.submit(push()).run.id, 5)

    assert summary.status is RunStatus.FAILED
    assert summary.stage("test-backend").status is StageStatus.SUCCEEDED
    for name in ("build", "deploy-staging", "deploy-production"):
        assert summary.stage(name).status is StageStatus.SKIPPED
    assert orchestrator.set_calls == []


def test_unhealthy_release_is_rolled_back(make_service):
    orch = FakeOrchestrator()
    svc = make_service(shop_pipeline(), orchestrator=orch)

    good = svc.submit(push(commit="good1")).run
    assert wait_until(lambda: waiting(svc, good.id, "deploy-production"))
    svc.approve(good.id, "production", "bob")
    svc.approve(good.id, "production", "carol")
    assert svc.wait(good.id, 5).status is RunStatus.SUCCEEDED

    orch.unhealthy.add("registry.local/shop:bad2")
    bad = svc.submit(push(commit="bad2")).run
    summary = svc.wait(bad.id, 5)

    assert summary.status is RunStatus.FAILED
    assert summary.stage("deploy-staging").status is StageStatus.FAILED
    assert "HealthCheckFailure" in summary.failure_reason("deploy-staging")
    assert summary.stage("deploy-production").status is StageStatus.SKIPPED
    assert svc.registry.get("staging").current == "registry.local/shop:good1"
    assert summary.deployments[0].result == "rolled_back"


def test_approval_timeout_fails_the_deploy(make_service):
    svc = make_service(shop_pipeline(approval_timeout=0.05))
    summary = svc.wait(svc.submit(push()).run.id, 5)

    assert summary.status is RunStatus.FAILED
    assert summary.stage("deploy-staging").status is StageStatus.SUCCEEDED
    assert summary.stage("deploy-production").status is StageStatus.FAILED
    assert summary.failure_reason("deploy-production") == "approval timed out"


def test_cancel_while_waiting_for_approval(make_service):
    svc = make_service(shop_pipeline())
    run = svc.submit(push()).run
    assert wait_until(lambda: waiting(svc, run.id, "deploy-production"))

    svc.cancel(run.id)
    summary = svc.wait(run.id, 5)

    assert summary.status is RunStatus.CANCELLED
    assert summary.stage("deploy-production").status is StageStatus.CANCELLED
    assert svc.registry.get("production").current is None
    # approvals for a finished run are refused
    with pytest.raises(ApprovalError):
        svc.approve(run.id, "production", "bob")


def test_manual_rollback_through_service(make_service):
    svc = make_service(fast_flow(
        deploy("deploy", "staging", "app:{commit}"),
        environments=[environment("staging")],
    ))
    for commit in ("v1", "v2", "v3"):
        assert svc.wait(svc.submit(push(commit=commit)).run.id, 5).status is RunStatus.SUCCEEDED

    outcome = svc.rollback("staging")
    assert outcome.reference == "app:v2"
    assert svc.registry.get("staging").current == "app:v2"


def test_unknown_run(make_service):
    svc = make_service(shop_pipeline())
    with pytest.raises(UnknownRunError):
        svc.get_run_status("missing")
    with pytest.raises(KeyError):
        svc.cancel("missing")
