"""Run Record: append-only execution trace of one pipeline run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .model import (
    SKIP_UPSTREAM_FAILED,
    RunStatus,
    StageStatus,
    TriggerEvent,
)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StageTransition:
    stage: str
    from_state: StageStatus
    to_state: StageStatus
    at: datetime
    reason: str | None = None


@dataclass(frozen=True)
class DeploymentOutcome:
    """Result of one pass through the environment state machine."""
    environment: str
    reference: str
    previous: str | None
    result: str                 # promoted | rolled_back | failed | cancelled
    reason: str | None
    started_at: datetime
    finished_at: datetime
    run_id: str | None = None
    stage: str | None = None
    states: Tuple[str, ...] = ()

    @property
    def promoted(self) -> bool:
        return self.result == "promoted"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "reference": self.reference,
            "previous": self.previous,
            "result": self.result,
            "reason": self.reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "run_id": self.run_id,
            "stage": self.stage,
            "states": list(self.states),
        }


@dataclass(frozen=True)
class StageSummary:
    id: str
    status: StageStatus
    reason: str | None
    attempts: int
    started_at: datetime | None
    finished_at: datetime | None
    logs_ref: str | None
    required: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "logs_ref": self.logs_ref,
            "required": self.required,
        }


@dataclass(frozen=True)
class RunSummary:
    """Immutable view of a finished (or in-flight) run, used for reporting."""
    run_id: str
    trigger: TriggerEvent
    status: RunStatus
    created_at: datetime
    finished_at: datetime | None
    stages: Mapping[str, StageSummary]
    transitions: Tuple[StageTransition, ...]
    deployments: Tuple[DeploymentOutcome, ...]

    def stage(self, stage_id: str) -> StageSummary:
        return self.stages[stage_id]

    def failed(self, stage_id: str) -> bool:
        return self.stages[stage_id].status is StageStatus.FAILED

    def failure_reason(self, stage_id: str) -> str | None:
        """Why did `stage_id` not succeed? None when it did."""
        s = self.stages[stage_id]
        if s.status is StageStatus.SUCCEEDED:
            return None
        return s.reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "trigger": {
                "kind": self.trigger.kind.value,
                "ref": self.trigger.ref,
                "commit": self.trigger.commit,
                "actor": self.trigger.actor,
            },
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stages": [s.to_dict() for s in self.stages.values()],
            "deployments": [d.to_dict() for d in self.deployments],
        }


@dataclass
class _StageState:
    status: StageStatus = StageStatus.PENDING
    reason: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    logs_ref: str | None = None


class RunRecord:
    """
    Append-only log of stage transitions and deployment outcomes.

    Every mutation goes through one lock so worker threads (deployments)
    and the scheduler loop can both write to it.
    """

    def __init__(self, run_id: str, trigger: TriggerEvent, stages: List[Tuple[str, bool]]):
        self.run_id = run_id
        self.trigger = trigger
        self.created_at = now_utc()
        self.finished_at: datetime | None = None
        self.status = RunStatus.PENDING
        self._lock = threading.Lock()
        self._order = [name for name, _ in stages]
        self._required = dict(stages)
        self._state: Dict[str, _StageState] = {name: _StageState() for name in self._order}
        self._transitions: List[StageTransition] = []
        self._deployments: List[DeploymentOutcome] = []
        self._summary: Optional[RunSummary] = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def transition(
        self,
        stage: str,
        to_state: StageStatus,
        reason: str | None = None,
        *,
        logs_ref: str | None = None,
    ) -> StageTransition:
        with self._lock:
            if self._summary is not None:
                raise RuntimeError(f"Run {self.run_id} is finalized")
            st = self._state[stage]
            if st.status.terminal:
                raise RuntimeError(
                    f"Stage '{stage}' is already {st.status.value}; cannot move to {to_state.value}"
                )
            at = now_utc()
            t = StageTransition(stage, st.status, to_state, at, reason)
            self._transitions.append(t)

            st.status = to_state
            if reason is not None:
                st.reason = reason
            if logs_ref is not None:
                st.logs_ref = logs_ref
            if to_state is StageStatus.RUNNING and st.started_at is None:
                st.started_at = at
            if to_state.terminal:
                st.finished_at = at
            return t

    def note_attempt(self, stage: str, attempt: int, logs_ref: str | None = None) -> None:
        with self._lock:
            st = self._state[stage]
            st.attempts = max(st.attempts, attempt)
            if logs_ref is not None:
                st.logs_ref = logs_ref

    def add_deployment(self, outcome: DeploymentOutcome) -> None:
        with self._lock:
            self._deployments.append(outcome)

    def set_status(self, status: RunStatus) -> None:
        with self._lock:
            self.status = status

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status_of(self, stage: str) -> StageStatus:
        with self._lock:
            return self._state[stage].status

    def statuses(self) -> Dict[str, StageStatus]:
        with self._lock:
            return {name: self._state[name].status for name in self._order}

    @property
    def transitions(self) -> List[StageTransition]:
        with self._lock:
            return list(self._transitions)

    @property
    def deployments(self) -> List[DeploymentOutcome]:
        with self._lock:
            return list(self._deployments)

    @property
    def finalized(self) -> bool:
        return self._summary is not None

    def verdict(self) -> RunStatus:
        """
        SUCCEEDED iff no required stage failed or was skipped because an
        upstream stage failed. CANCELLED wins if anything was cancelled.
        """
        with self._lock:
            states = [(self._state[n], self._required[n]) for n in self._order]
        if any(st.status is StageStatus.CANCELLED for st, _ in states):
            return RunStatus.CANCELLED
        for st, required in states:
            if not required:
                continue
            if st.status is StageStatus.FAILED:
                return RunStatus.FAILED
            if st.status is StageStatus.SKIPPED and st.reason == SKIP_UPSTREAM_FAILED:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED

    def snapshot(self) -> RunSummary:
        """Summary of the run as it stands right now (not final)."""
        if self._summary is not None:
            return self._summary
        with self._lock:
            return self._build_summary()

    def finalize(self, status: RunStatus | None = None) -> RunSummary:
        """
        Freeze the record. Every stage must be terminal by now; the
        scheduler guarantees this, so a leftover is a bug, not a state.
        """
        if self._summary is not None:
            return self._summary
        final = status or self.verdict()
        with self._lock:
            leftovers = [n for n in self._order if not self._state[n].status.terminal]
            if leftovers:
                raise RuntimeError(f"Cannot finalize run {self.run_id}: non-terminal stages {leftovers}")
            self.status = final
            self.finished_at = now_utc()
            self._summary = self._build_summary()
            return self._summary

    def _build_summary(self) -> RunSummary:
        stages = {
            name: StageSummary(
                id=name,
                status=st.status,
                reason=st.reason,
                attempts=st.attempts,
                started_at=st.started_at,
                finished_at=st.finished_at,
                logs_ref=st.logs_ref,
                required=self._required[name],
            )
            for name, st in ((n, self._state[n]) for n in self._order)
        }
        return RunSummary(
            run_id=self.run_id,
            trigger=self.trigger,
            status=self.status,
            created_at=self.created_at,
            finished_at=self.finished_at,
            stages=MappingProxyType(stages),
            transitions=tuple(self._transitions),
            deployments=tuple(self._deployments),
        )
