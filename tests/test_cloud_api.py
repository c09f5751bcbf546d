from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from stageflow import RunStatus, deploy, environment, stage
from stageflow.cloud.db import make_session_factory
from stageflow.cloud.main import create_app
from stageflow.cloud.redisq import trigger_lock_key
from stageflow.cloud.store import RunStore

from fakes import FakeExecutor, FakeOrchestrator, fast_flow, push, wait_until


class FakeRedis:
    """Just enough of redis.asyncio for the trigger lock."""

    def __init__(self):
        self.data = {}

    async def set(self, key, value, nx=False, xx=False, ex=None, keepttl=False):
        if nx and key in self.data:
            return None
        if xx and key not in self.data:
            return None
        self.data[key] = value
        return True

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0


def pipeline():
    return fast_flow(
        stage("build", "build"),
        deploy("deploy-prod", "production", "app:{commit}", needs=["build"]),
        environments=[environment("production", required_reviewers=1, prevent_self_review=True)],
    )


def trigger_body(commit="abc123", actor="alice", ref="refs/heads/main"):
    return {"kind": "push", "ref": ref, "commit": commit, "actor": actor}


@pytest.fixture
def service(make_service):
    return make_service(pipeline())


def test_trigger_approve_and_status(service):
    with TestClient(create_app(service, drain_interval=0.01)) as client:
        resp = client.post("/triggers", json=trigger_body())
        assert resp.status_code == 200
        run_id = resp.json()["run_id"]
        assert resp.json()["duplicate"] is False

        again = client.post("/triggers", json=trigger_body()).json()
        assert again["run_id"] == run_id
        assert again["duplicate"] is True

        assert wait_until(lambda: service.get_run_status(run_id).stage("deploy-prod").status.value == "waiting")

        denied = client.post(f"/runs/{run_id}/approvals", json={"environment": "production", "reviewer": "alice"})
        assert denied.status_code == 403

        ok = client.post(f"/runs/{run_id}/approvals", json={"environment": "production", "reviewer": "bob"})
        assert ok.status_code == 200
        assert ok.json()["reviewers"] == ["bob"]

        assert service.wait(run_id, 5).status is RunStatus.SUCCEEDED
        body = client.get(f"/runs/{run_id}").json()
        assert body["status"] == "succeeded"
        assert [s["id"] for s in body["stages"]] == ["build", "deploy-prod"]
        assert body["deployments"][0]["result"] == "promoted"

        envs = client.get("/environments").json()
        assert envs[0]["name"] == "production"
        assert envs[0]["current_reference"] == "app:abc123"


def test_unknown_run_and_environment(service):
    with TestClient(create_app(service)) as client:
        assert client.get("/runs/nope").status_code == 404
        assert client.post("/runs/nope/cancel").status_code == 404
        assert client.post("/environments/nope/rollback", json={}).status_code == 404

        run_id = client.post("/triggers", json=trigger_body()).json()["run_id"]
        resp = client.post(f"/runs/{run_id}/approvals", json={"environment": "moon", "reviewer": "bob"})
        assert resp.status_code == 404


def test_invalid_trigger_is_rejected(service):
    with TestClient(create_app(service)) as client:
        assert client.post("/triggers", json={"kind": "push", "ref": "main"}).status_code == 422
        assert client.post("/triggers", json={**trigger_body(), "kind": "tag"}).status_code == 422


def test_cancel(make_service):
    ex = FakeExecutor(delays={"build": 10})
    svc = make_service(pipeline(), executor=ex)
    with TestClient(create_app(svc)) as client:
        run_id = client.post("/triggers", json=trigger_body()).json()["run_id"]
        assert wait_until(lambda: ex.attempts("build") == 1)

        assert client.post(f"/runs/{run_id}/cancel").status_code == 200
        assert svc.wait(run_id, 5).status is RunStatus.CANCELLED


def test_rollback_endpoint(make_service):
    orch = FakeOrchestrator()
    svc = make_service(
        fast_flow(deploy("deploy", "staging", "app:{commit}"), environments=[environment("staging")]),
        orchestrator=orch,
    )
    with TestClient(create_app(svc)) as client:
        resp = client.post("/environments/staging/rollback", json={})
        assert resp.status_code == 400

        for commit in ("v1", "v2"):
            run_id = client.post("/triggers", json=trigger_body(commit=commit)).json()["run_id"]
            svc.wait(run_id, 5)

        orch.unhealthy.add("app:v1")
        failed = client.post("/environments/staging/rollback", json={"target": "previous"})
        assert failed.status_code == 409
        assert client.get("/environments").json()[0]["incident"]

        orch.unhealthy.clear()
        ok = client.post("/environments/staging/rollback", json={"target": "app:v1"})
        assert ok.status_code == 200
        assert ok.json()["reference"] == "app:v1"

        history = client.get("/environments/staging/deployments").json()
        assert [d["result"] for d in history] == ["promoted", "promoted", "failed", "promoted"]


def test_redis_lock_dedups_and_is_released(service):
    r = FakeRedis()
    with TestClient(create_app(service, redis_client=r, drain_interval=0.01)) as client:
        run_id = client.post("/triggers", json=trigger_body(commit="c1")).json()["run_id"]
        key = trigger_lock_key(push(commit="c1"))
        assert r.data[key] == run_id

        dup = client.post("/triggers", json=trigger_body(commit="c1")).json()
        assert dup["duplicate"] is True and dup["run_id"] == run_id

        client.post(f"/runs/{run_id}/cancel")
        service.wait(run_id, 5)
        assert wait_until(lambda: key not in r.data)


def test_finished_runs_are_persisted(service):
    engine, sessions = make_session_factory(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    store = RunStore(engine, sessions)

    with TestClient(create_app(service, store=store, drain_interval=0.01)) as client:
        run_id = client.post("/triggers", json=trigger_body()).json()["run_id"]
        assert wait_until(lambda: service.get_run_status(run_id).stage("deploy-prod").status.value == "waiting")
        client.post(f"/runs/{run_id}/approvals", json={"environment": "production", "reviewer": "bob"})
        service.wait(run_id, 5)

        # query the store on the app's own event loop
        assert wait_until(lambda: client.portal.call(store.get_run, run_id) is not None)
        stored = client.portal.call(store.get_run, run_id)
        deployments = client.portal.call(store.deployments, "production")

    assert stored["status"] == "succeeded"
    assert stored["trigger"]["commit"] == "abc123"
    assert [(d["run_id"], d["reference"], d["result"]) for d in deployments] == [(run_id, "app:abc123", "promoted")]
