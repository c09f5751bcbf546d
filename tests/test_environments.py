from __future__ import annotations

import threading
import time
from dataclasses import replace

import pytest

from stageflow.environments import DeployPolicy, EnvironmentController, EnvironmentRegistry, EnvState
from stageflow.errors import DeploymentError, RollbackFailure, UnknownEnvironmentError

from fakes import FakeOrchestrator

POLICY = DeployPolicy(
    rollout_timeout=0.1,
    rollout_poll_interval=0.01,
    probe_path="/healthz",
    probe_interval=0.0,
    probe_attempts=3,
)


@pytest.fixture
def registry():
    reg = EnvironmentRegistry()
    reg.define("production")
    return reg


def controller(registry, api):
    return EnvironmentController(registry, api, POLICY)


def test_promote(registry):
    api = FakeOrchestrator()
    ctl = controller(registry, api)

    first = ctl.deploy("production", "app:v1", run_id="r1", stage="deploy")
    second = ctl.deploy("production", "app:v2")

    env = registry.get("production")
    assert first.promoted and second.promoted
    assert first.run_id == "r1"
    assert second.previous == "app:v1"
    assert env.current == "app:v2"
    assert env.history == ["app:v1"]
    assert env.state is EnvState.IDLE
    assert env.last_promoted_at is not None
    assert second.states == ("idle", "deploying", "verifying", "promoted", "idle")


def test_rollout_timeout_rolls_back(registry):
    api = FakeOrchestrator(stuck=["app:v2"])
    ctl = controller(registry, api)
    ctl.deploy("production", "app:v1")

    outcome = ctl.deploy("production", "app:v2")

    assert outcome.result == "rolled_back"
    assert outcome.reason.startswith("DeployTimeoutError")
    assert registry.get("production").current == "app:v1"
    # previous reference reasserted
    assert api.set_calls[-1] == ("production", "app:v1")
    assert "rolled_back" in outcome.states


def test_health_failure_rolls_back(registry):
    api = FakeOrchestrator(unhealthy=["app:v2"])
    ctl = controller(registry, api)
    ctl.deploy("production", "app:v1")

    outcome = ctl.deploy("production", "app:v2")

    assert outcome.result == "rolled_back"
    assert "HealthCheckFailure" in outcome.reason
    assert "503" in outcome.reason
    env = registry.get("production")
    assert env.current == "app:v1"
    assert env.history == []
    assert env.incident is None


def test_failure_on_first_deploy_has_nothing_to_restore(registry):
    api = FakeOrchestrator(unhealthy=["app:v1"])
    outcome = controller(registry, api).deploy("production", "app:v1")

    assert outcome.result == "rolled_back"
    assert outcome.previous is None
    assert registry.get("production").current is None
    assert api.set_calls == [("production", "app:v1")]


def test_failed_automatic_rollback_is_fatal(registry):
    api = FakeOrchestrator()
    ctl = controller(registry, api)
    ctl.deploy("production", "app:v1")
    # the known-good version breaks too
    api.unhealthy.update({"app:v1", "app:v2"})

    with pytest.raises(RollbackFailure) as exc:
        ctl.deploy("production", "app:v2", run_id="r9")

    assert exc.value.outcome.result == "failed"
    assert exc.value.outcome.run_id == "r9"
    env = registry.get("production")
    assert env.incident is not None and "app:v1" in env.incident
    assert env.state is EnvState.IDLE


def test_cancelled_deploy_never_touches_the_cluster(registry):
    api = FakeOrchestrator()
    ctl = controller(registry, api)
    ctl.deploy("production", "app:v1")

    cancel = threading.Event()
    cancel.set()
    outcome = ctl.deploy("production", "app:v2", cancel=cancel)

    assert outcome.result == "cancelled"
    assert ("production", "app:v2") not in api.set_calls
    assert api.set_calls == [("production", "app:v1")]
    assert registry.get("production").current == "app:v1"
    assert registry.get("production").state is EnvState.IDLE


def test_cancelled_first_deploy_leaves_environment_empty(registry):
    api = FakeOrchestrator()
    cancel = threading.Event()
    cancel.set()

    outcome = controller(registry, api).deploy("production", "app:v1", cancel=cancel)

    assert outcome.result == "cancelled"
    assert api.set_calls == []
    assert registry.get("production").current is None


def test_cancel_during_rollout(registry):
    api = FakeOrchestrator()
    ctl = EnvironmentController(registry, api, replace(POLICY, rollout_timeout=5))
    ctl.deploy("production", "app:v1")
    api.stuck.add("app:v2")

    cancel = threading.Event()
    threading.Timer(0.03, cancel.set).start()
    outcome = ctl.deploy("production", "app:v2", cancel=cancel)

    assert outcome.result == "cancelled"
    assert "DeployCancelled" in outcome.reason
    assert api.set_calls[-1] == ("production", "app:v1")
    assert registry.get("production").current == "app:v1"


def test_deploys_to_one_environment_are_serialized(registry):
    class Slow(FakeOrchestrator):
        def get_rollout_status(self, environment):
            time.sleep(0.05)
            return super().get_rollout_status(environment)

    api = Slow()
    ctl = controller(registry, api)
    outcomes = []

    def deploy(ref):
        outcomes.append(ctl.deploy("production", ref))

    threads = [threading.Thread(target=deploy, args=(ref,)) for ref in ("app:v1", "app:v2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(outcomes) == 2 and all(o.promoted for o in outcomes)
    first, second = sorted(outcomes, key=lambda o: o.started_at)
    # DEPLOYING -> IDLE spans never overlap
    assert first.finished_at <= second.started_at
    assert first.states[-1] == "idle" and second.states[0] == "idle"
    assert second.previous == first.reference
    assert registry.get("production").current == second.reference


def test_manual_rollback_to_previous(registry):
    api = FakeOrchestrator()
    ctl = controller(registry, api)
    for ref in ("v1", "v2", "v3"):
        ctl.deploy("production", ref)
    env = registry.get("production")
    assert env.history == ["v1", "v2"]

    outcome = ctl.rollback("production")

    assert outcome.promoted
    assert outcome.reason == "manual rollback"
    assert env.current == "v2"
    assert env.history == ["v1", "v2", "v3"]
    assert api.set_calls[-1] == ("production", "v2")


def test_manual_rollback_to_explicit_target(registry):
    ctl = controller(registry, FakeOrchestrator())
    for ref in ("v1", "v2", "v3"):
        ctl.deploy("production", ref)

    ctl.rollback("production", "v1")
    assert registry.get("production").current == "v1"


def test_manual_rollback_without_history(registry):
    ctl = controller(registry, FakeOrchestrator())
    with pytest.raises(DeploymentError):
        ctl.rollback("production")
    ctl.deploy("production", "v1")
    with pytest.raises(DeploymentError):
        ctl.rollback("production")


def test_manual_rollback_verification_failure(registry):
    api = FakeOrchestrator()
    ctl = controller(registry, api)
    ctl.deploy("production", "v1")
    ctl.deploy("production", "v2")
    api.unhealthy.add("v1")

    with pytest.raises(RollbackFailure) as exc:
        ctl.rollback("production")

    env = registry.get("production")
    assert "v1" in env.incident
    # never retried: exactly one set_image for the rollback
    assert api.set_calls[-1] == ("production", "v1")
    assert api.set_calls.count(("production", "v1")) == 2
    assert exc.value.outcome.result == "failed"
    assert env.current == "v2"


def test_unknown_environment(registry):
    with pytest.raises(UnknownEnvironmentError):
        controller(registry, FakeOrchestrator()).deploy("nope", "v1")


def test_orchestration_error_leaves_environment_idle(registry):
    class Broken(FakeOrchestrator):
        def set_image(self, environment, reference):
            raise RuntimeError("api down")

    ctl = controller(registry, Broken())
    with pytest.raises(RuntimeError):
        ctl.deploy("production", "v1")
    assert registry.get("production").state is EnvState.IDLE


def test_describe():
    reg = EnvironmentRegistry()
    reg.define("staging")
    ctl = EnvironmentController(reg, FakeOrchestrator(), POLICY)
    ctl.deploy("staging", "v1")

    d = reg.get("staging").describe()
    assert d["name"] == "staging"
    assert d["current_reference"] == "v1"
    assert d["state"] == "idle"
    assert d["last_promoted_at"]
