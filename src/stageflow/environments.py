# environments.py
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from .errors import (
    DeployCancelled,
    DeploymentError,
    DeployTimeoutError,
    HealthCheckFailure,
    RollbackFailure,
    UnknownEnvironmentError,
)
from .record import DeploymentOutcome, now_utc

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# External orchestration API (consumed)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RolloutStatus:
    available: bool
    replicas: int = 0
    ready_replicas: int = 0


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    status_code: int | None = None


class OrchestrationAPI(Protocol):
    def set_image(self, environment: str, reference: str) -> None: ...

    def get_rollout_status(self, environment: str) -> RolloutStatus: ...

    def health_probe(self, environment: str, path: str) -> ProbeResult: ...


# ----------------------------------------------------------------------
# Environment state
# ----------------------------------------------------------------------

class EnvState(str, enum.Enum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class ProtectionRules:
    required_reviewers: int = 0
    wait_timer: float = 0.0
    prevent_self_review: bool = False

    def __post_init__(self) -> None:
        if self.required_reviewers < 0:
            raise ValueError("required_reviewers must be >= 0")
        if self.wait_timer < 0:
            raise ValueError("wait_timer must be >= 0")


@dataclass
class Environment:
    """
    A named deployment target.

    `history` holds references that were current before, oldest first.
    Only the EnvironmentController mutates an Environment, and only while
    holding `lock`.
    """
    name: str
    protection: ProtectionRules = field(default_factory=ProtectionRules)
    current: str | None = None
    history: List[str] = field(default_factory=list)
    state: EnvState = EnvState.IDLE
    last_promoted_at: datetime | None = None
    incident: str | None = None
    probe_path: str | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def previous_reference(self) -> str | None:
        """Most recent history entry that differs from the current reference."""
        for ref in reversed(self.history):
            if ref != self.current:
                return ref
        return None

    def promote(self, reference: str) -> None:
        if self.current is not None:
            self.history.append(self.current)
        self.current = reference
        self.last_promoted_at = now_utc()
        self.incident = None

    def describe(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "current_reference": self.current,
            "last_promoted_at": self.last_promoted_at.isoformat() if self.last_promoted_at else None,
            "state": self.state.value,
            "history": list(self.history),
            "incident": self.incident,
            "protection": {
                "required_reviewers": self.protection.required_reviewers,
                "wait_timer": self.protection.wait_timer,
                "prevent_self_review": self.protection.prevent_self_review,
            },
        }


class EnvironmentRegistry:
    """
    Process-wide environment state, keyed by name.

    Passed explicitly to whoever needs it; environments are created on
    first reference.
    """

    def __init__(self, environments: Optional[List[Environment]] = None):
        self._lock = threading.Lock()
        self._envs: Dict[str, Environment] = {}
        for env in environments or []:
            self._envs[env.name] = env

    def define(self, name: str, protection: ProtectionRules | None = None, *, probe_path: str | None = None) -> Environment:
        with self._lock:
            env = self._envs.get(name)
            if env is None:
                env = Environment(name=name, protection=protection or ProtectionRules(), probe_path=probe_path)
                self._envs[name] = env
            else:
                if protection is not None:
                    env.protection = protection
                if probe_path is not None:
                    env.probe_path = probe_path
            return env

    def ensure(self, name: str) -> Environment:
        return self.define(name)

    def get(self, name: str) -> Environment:
        with self._lock:
            try:
                return self._envs[name]
            except KeyError:
                raise UnknownEnvironmentError(name) from None

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._envs

    def list(self) -> List[Environment]:
        with self._lock:
            return [self._envs[k] for k in sorted(self._envs)]


# ----------------------------------------------------------------------
# Controller
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class DeployPolicy:
    rollout_timeout: float = 300.0
    rollout_poll_interval: float = 5.0
    probe_path: str = "/healthz"
    probe_interval: float = 5.0
    probe_attempts: int = 5


class EnvironmentController:
    """
    Drives the deployment state machine for every environment:

        IDLE -> DEPLOYING -> VERIFYING -> PROMOTED | ROLLED_BACK -> IDLE

    One transition per environment at a time (per-environment lock); a
    second deploy to the same environment blocks until the first is done.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        api: OrchestrationAPI,
        policy: DeployPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.api = api
        self.policy = policy or DeployPolicy()
        self._clock = clock
        self._outcomes: List[DeploymentOutcome] = []
        self._outcomes_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def deploy(
        self,
        environment: str,
        reference: str,
        *,
        cancel: threading.Event | None = None,
        run_id: str | None = None,
        stage: str | None = None,
    ) -> DeploymentOutcome:
        """
        Roll `reference` out to `environment`, verify it, and promote it.

        Rollout timeout, health failure and cancellation all reassert the
        previous reference and return a non-promoted outcome.

        Raises:
          RollbackFailure: the previous reference failed verification too.
        """
        env = self.registry.get(environment)
        cancel = cancel or threading.Event()

        with env.lock:
            previous = env.current
            started = now_utc()
            states = [env.state.value]
            if cancel.is_set():
                # cancelled while queued on the lock: the cluster is never touched
                log.info("deploy skipped environment=%s reference=%s: run cancelled", env.name, reference)
                return self._finish(
                    env, reference, previous, "cancelled", "cancelled before rollout",
                    started, states, run_id, stage,
                )
            log.info("deploy start environment=%s reference=%s previous=%s", env.name, reference, previous)

            try:
                self._enter(env, EnvState.DEPLOYING, states)
                self.api.set_image(env.name, reference)
                self._await_rollout(env, reference, cancel)
                self._enter(env, EnvState.VERIFYING, states)
                self._verify(env, reference, cancel)
            except (DeployTimeoutError, HealthCheckFailure, DeployCancelled) as err:
                self._enter(env, EnvState.ROLLED_BACK, states)
                log.warning("deploy failed environment=%s: %s", env.name, err)
                result = "cancelled" if isinstance(err, DeployCancelled) else "rolled_back"
                try:
                    self._restore(env, previous, reference, states)
                except RollbackFailure as fatal:
                    fatal.outcome = self._finish(
                        env, reference, previous, "failed", f"{err}; {fatal}", started, states, run_id, stage,
                    )
                    raise
                return self._finish(
                    env, reference, previous, result, f"{type(err).__name__}: {err.message}",
                    started, states, run_id, stage,
                )
            except BaseException:
                # Orchestration API blew up: leave the machine idle, let the caller see it
                self._enter(env, EnvState.IDLE, states)
                raise

            self._enter(env, EnvState.PROMOTED, states)
            env.promote(reference)
            log.info("promoted environment=%s reference=%s", env.name, reference)
            return self._finish(env, reference, previous, "promoted", None, started, states, run_id, stage)

    def rollback(self, environment: str, target: str = "previous") -> DeploymentOutcome:
        """
        Manual rollback, usable outside of any run.

        `target` is a reference or "previous" (most recent history entry
        that differs from current). A failed verification of the target is
        a RollbackFailure; it is never retried.
        """
        env = self.registry.get(environment)

        with env.lock:
            if target == "previous":
                resolved = env.previous_reference()
                if resolved is None:
                    raise DeploymentError(env.name, target, "no previous reference to roll back to")
            else:
                resolved = target

            previous = env.current
            started = now_utc()
            states = [env.state.value]
            log.info("rollback start environment=%s target=%s current=%s", env.name, resolved, previous)

            try:
                self._enter(env, EnvState.DEPLOYING, states)
                self.api.set_image(env.name, resolved)
                self._await_rollout(env, resolved, threading.Event())
                self._enter(env, EnvState.VERIFYING, states)
                self._verify(env, resolved, threading.Event())
            except (DeployTimeoutError, HealthCheckFailure) as err:
                self._enter(env, EnvState.ROLLED_BACK, states)
                env.incident = f"rollback to {resolved} failed: {err.message}"
                log.error("rollback failed environment=%s: %s", env.name, err)
                fatal = RollbackFailure(env.name, resolved, err.message)
                fatal.outcome = self._finish(
                    env, resolved, previous, "failed", f"RollbackFailure: {err.message}",
                    started, states, None, None,
                )
                raise fatal from err
            except BaseException:
                self._enter(env, EnvState.IDLE, states)
                raise

            self._enter(env, EnvState.PROMOTED, states)
            env.promote(resolved)
            log.info("rolled back environment=%s reference=%s", env.name, resolved)
            return self._finish(env, resolved, previous, "promoted", "manual rollback", started, states, None, None)

    def outcomes(self) -> List[DeploymentOutcome]:
        with self._outcomes_lock:
            return list(self._outcomes)

    # ------------------------------------------------------------------
    # State machine internals (caller holds env.lock)
    # ------------------------------------------------------------------

    def _enter(self, env: Environment, state: EnvState, states: List[str]) -> None:
        env.state = state
        states.append(state.value)

    def _await_rollout(self, env: Environment, reference: str, cancel: threading.Event) -> None:
        deadline = self._clock() + self.policy.rollout_timeout
        while True:
            if cancel.is_set():
                raise DeployCancelled(env.name, reference, "cancelled during rollout")
            status = self.api.get_rollout_status(env.name)
            if status.available:
                return
            if self._clock() >= deadline:
                raise DeployTimeoutError(
                    env.name,
                    reference,
                    f"rollout not available after {self.policy.rollout_timeout:.0f}s "
                    f"({status.ready_replicas}/{status.replicas} ready)",
                )
            cancel.wait(self.policy.rollout_poll_interval)

    def _verify(self, env: Environment, reference: str, cancel: threading.Event) -> None:
        path = env.probe_path or self.policy.probe_path
        attempts = max(1, self.policy.probe_attempts)
        last: ProbeResult | None = None
        for attempt in range(1, attempts + 1):
            if cancel.is_set():
                raise DeployCancelled(env.name, reference, "cancelled during verification")
            last = self.api.health_probe(env.name, path)
            if last.ok:
                return
            log.debug("probe %d/%d failed environment=%s status=%s", attempt, attempts, env.name, last.status_code)
            if attempt < attempts:
                cancel.wait(self.policy.probe_interval)
        code = last.status_code if last is not None else None
        raise HealthCheckFailure(
            env.name, reference, f"health probe {path} failed {attempts} time(s) (last status={code})"
        )

    def _restore(self, env: Environment, good: str | None, failed: str, states: List[str]) -> None:
        """Reassert the last known-good reference and verify it once (bounded)."""
        if good is None:
            log.warning("no previous reference to restore on environment=%s", env.name)
            return
        self.api.set_image(env.name, good)
        try:
            # not cancellable: the environment must end in a known state
            self._await_rollout(env, good, threading.Event())
            self._verify(env, good, threading.Event())
        except (DeployTimeoutError, HealthCheckFailure) as err:
            env.incident = f"automatic rollback to {good} failed after {failed}: {err.message}"
            log.error("rollback failed environment=%s: %s", env.name, err)
            raise RollbackFailure(env.name, good, err.message) from err

    def _finish(
        self,
        env: Environment,
        reference: str,
        previous: str | None,
        result: str,
        reason: str | None,
        started: datetime,
        states: List[str],
        run_id: str | None,
        stage: str | None,
    ) -> DeploymentOutcome:
        self._enter(env, EnvState.IDLE, states)
        outcome = DeploymentOutcome(
            environment=env.name,
            reference=reference,
            previous=previous,
            result=result,
            reason=reason,
            started_at=started,
            finished_at=now_utc(),
            run_id=run_id,
            stage=stage,
            states=tuple(states),
        )
        with self._outcomes_lock:
            self._outcomes.append(outcome)
        return outcome
