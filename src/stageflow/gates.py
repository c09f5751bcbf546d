# gates.py
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatch
from typing import Callable, Dict, List, Optional, Set, Tuple

from .environments import EnvironmentRegistry
from .errors import ApprovalError
from .model import Stage, TriggerEvent
from .record import now_utc

log = logging.getLogger(__name__)


class Verdict(str, enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"
    PENDING = "pending"


@dataclass(frozen=True)
class GateDecision:
    verdict: Verdict
    reason: str | None = None
    # set when the gate gave up waiting (approval timeout)
    expired: bool = False

    @classmethod
    def allow(cls) -> GateDecision:
        return cls(Verdict.ALLOW)

    @classmethod
    def block(cls, reason: str) -> GateDecision:
        return cls(Verdict.BLOCK, reason)

    @classmethod
    def pending(cls, reason: str) -> GateDecision:
        return cls(Verdict.PENDING, reason)


# ----------------------------------------------------------------------
# Approvals
# ----------------------------------------------------------------------

@dataclass
class Approval:
    environment: str
    run_id: str
    actor: str
    requested_at: float                     # monotonic clock, for the wait timer
    requested_wall: datetime = field(default_factory=now_utc)
    reviewers: Set[str] = field(default_factory=set)
    granted_at: datetime | None = None


class ApprovalBook:
    """
    Approval requests keyed by (run_id, environment).

    Requests are opened by the gate evaluator the first time a deploy stage
    reaches a protected environment. `approve()` records a reviewer and
    wakes everyone waiting on the book.
    """

    def __init__(self, registry: EnvironmentRegistry, clock: Callable[[], float] = time.monotonic):
        self._registry = registry
        self._clock = clock
        self._lock = threading.Lock()
        self._approvals: Dict[Tuple[str, str], Approval] = {}
        self._listeners: List[threading.Event] = []
        self._early: Dict[Tuple[str, str], List[str]] = {}

    def subscribe(self, event: threading.Event) -> None:
        with self._lock:
            self._listeners.append(event)

    def unsubscribe(self, event: threading.Event) -> None:
        with self._lock:
            if event in self._listeners:
                self._listeners.remove(event)

    def request(self, run_id: str, environment: str, actor: str) -> Approval:
        """Open (or return the already-open) request for this run/environment."""
        key = (run_id, environment)
        with self._lock:
            appr = self._approvals.get(key)
            if appr is None:
                appr = Approval(environment=environment, run_id=run_id, actor=actor,
                                requested_at=self._clock())
                self._approvals[key] = appr
                log.info("approval requested run=%s environment=%s", run_id, environment)
                for reviewer in self._early.pop(key, []):
                    self._add_reviewer(appr, reviewer)
            return appr

    def get(self, run_id: str, environment: str) -> Optional[Approval]:
        with self._lock:
            return self._approvals.get((run_id, environment))

    def pending(self) -> List[Approval]:
        with self._lock:
            return [a for a in self._approvals.values() if a.granted_at is None]

    def approve(self, run_id: str, environment: str, reviewer: str, *, actor: str | None = None) -> Approval | None:
        """
        Record `reviewer` for the run's request on `environment`.

        Approvals may arrive before the stage reaches its gate (`actor`
        must then be given so self-review can still be rejected); they are
        held and applied when the request opens.

        Raises:
          ApprovalError: self-review on a protected environment, or no
            request and no actor to check against.
        """
        env = self._registry.get(environment)
        key = (run_id, environment)
        with self._lock:
            appr = self._approvals.get(key)
            if appr is None:
                if actor is None:
                    raise ApprovalError(
                        f"No approval request for run {run_id} on environment '{environment}'"
                    )
                if env.protection.prevent_self_review and reviewer == actor:
                    raise ApprovalError(f"{reviewer} triggered run {run_id} and cannot approve it")
                early = self._early.setdefault(key, [])
                if reviewer not in early:
                    early.append(reviewer)
                return None

            if env.protection.prevent_self_review and reviewer == appr.actor:
                raise ApprovalError(f"{reviewer} triggered run {run_id} and cannot approve it")
            self._add_reviewer(appr, reviewer)
            listeners = list(self._listeners)

        for ev in listeners:
            ev.set()
        return appr

    def _add_reviewer(self, appr: Approval, reviewer: str) -> None:
        if reviewer in appr.reviewers:
            return
        appr.reviewers.add(reviewer)
        required = self._registry.get(appr.environment).protection.required_reviewers
        log.info(
            "approval recorded run=%s environment=%s reviewer=%s (%d/%d)",
            appr.run_id, appr.environment, reviewer, len(appr.reviewers), required,
        )

    def mark_granted(self, appr: Approval) -> None:
        with self._lock:
            if appr.granted_at is None:
                appr.granted_at = now_utc()

    def elapsed(self, appr: Approval) -> float:
        return self._clock() - appr.requested_at

    def discard_run(self, run_id: str) -> None:
        with self._lock:
            for key in [k for k in self._approvals if k[0] == run_id]:
                del self._approvals[key]
            for key in [k for k in self._early if k[0] == run_id]:
                del self._early[key]


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class GateContext:
    run_id: str
    trigger: TriggerEvent


class GateEvaluator:
    """Decides whether a ready stage may be dispatched right now."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        approvals: ApprovalBook,
        *,
        approval_timeout: float | None = None,
    ):
        self.registry = registry
        self.approvals = approvals
        self.approval_timeout = approval_timeout

    def evaluate(self, stage: Stage, ctx: GateContext) -> GateDecision:
        trigger = ctx.trigger

        if stage.events and trigger.kind not in stage.events:
            kinds = ", ".join(k.value for k in stage.events)
            return GateDecision.block(f"event '{trigger.kind.value}' not in [{kinds}]")

        if stage.branches and not any(fnmatch(trigger.branch, p) for p in stage.branches):
            return GateDecision.block(f"branch '{trigger.branch}' does not match {list(stage.branches)}")

        if not stage.is_deploy:
            return GateDecision.allow()

        env = self.registry.get(stage.environment)
        rules = env.protection
        if rules.required_reviewers == 0 and rules.wait_timer <= 0:
            return GateDecision.allow()

        appr = self.approvals.request(ctx.run_id, env.name, trigger.actor)
        have = len(appr.reviewers)
        waited = self.approvals.elapsed(appr)

        if have >= rules.required_reviewers and waited >= rules.wait_timer:
            self.approvals.mark_granted(appr)
            return GateDecision.allow()

        if self.approval_timeout is not None and waited >= self.approval_timeout:
            return GateDecision(Verdict.PENDING, "approval timed out", expired=True)

        if have < rules.required_reviewers:
            return GateDecision.pending(
                f"waiting for approvals on '{env.name}' ({have}/{rules.required_reviewers})"
            )
        return GateDecision.pending(
            f"wait timer on '{env.name}' ({rules.wait_timer - waited:.0f}s left)"
        )
