# runner.py
from __future__ import annotations

import logging
import os
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Set

from .dag import Graph
from .environments import EnvironmentController
from .errors import RollbackFailure, StageExecutionError
from .executors import CommandExecutor
from .gates import GateContext, GateEvaluator, Verdict
from .model import (
    SKIP_CONDITION,
    SKIP_UPSTREAM_FAILED,
    RunStatus,
    Stage,
    StageStatus,
    TriggerEvent,
)
from .record import RunRecord, RunSummary, StageTransition

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Run
# ----------------------------------------------------------------------

class WakeSignal(threading.Event):
    """
    An Event that can also be waited on next to worker futures.

    `future()` resolves the first time the signal is set after the last
    `clear()`.
    """

    def __init__(self) -> None:
        super().__init__()
        self._future_lock = threading.Lock()
        self._future: Future = Future()

    def set(self) -> None:
        super().set()
        with self._future_lock:
            if not self._future.done():
                self._future.set_result(None)

    def clear(self) -> None:
        super().clear()
        with self._future_lock:
            if self._future.done():
                self._future = Future()

    def future(self) -> Future:
        with self._future_lock:
            return self._future


class Run:
    """One execution of an instantiated stage graph for one trigger event."""

    def __init__(self, graph: Graph, trigger: TriggerEvent, run_id: str | None = None):
        self.id = run_id or uuid.uuid4().hex[:12]
        self.graph = graph
        self.trigger = trigger
        self.record = RunRecord(self.id, trigger, [(s.id, s.required) for s in graph])
        self.cancel_event = threading.Event()
        # set on approvals / cancellation so the scheduler loop re-evaluates early
        self.wake = WakeSignal()
        self.done = threading.Event()

    @property
    def status(self) -> RunStatus:
        return self.record.status

    def cancel(self) -> None:
        log.info("cancel requested run=%s", self.id)
        self.cancel_event.set()
        self.wake.set()

    def summary(self) -> RunSummary:
        return self.record.snapshot()

    def wait(self, timeout: float | None = None) -> bool:
        return self.done.wait(timeout)


def run_env(run: Run) -> Dict[str, str]:
    """Variables every command stage sees (stage `env` wins on conflict)."""
    t = run.trigger
    return {
        "STAGEFLOW_RUN_ID": run.id,
        "STAGEFLOW_EVENT": t.kind.value,
        "STAGEFLOW_REF": t.ref,
        "STAGEFLOW_BRANCH": t.branch,
        "STAGEFLOW_COMMIT": t.commit,
        "STAGEFLOW_SHORT_COMMIT": t.commit[:7],
        "STAGEFLOW_ACTOR": t.actor,
    }


@dataclass(frozen=True)
class StageResult:
    stage: str
    status: StageStatus          # SUCCEEDED | FAILED | CANCELLED
    reason: str | None = None


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

class Scheduler:
    """
    Single coordinating loop over a bounded worker pool.

    Each iteration: compute the ready set, pass it through the gates,
    dispatch what is allowed (pool capacity + one running stage per
    concurrency group), then wait for a completion, an approval, a
    cancellation or the next tick.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        controller: EnvironmentController,
        gates: GateEvaluator,
        *,
        workers: int | None = None,
        tick_interval: float = 1.0,
        on_transition: Optional[Callable[[Run, StageTransition], None]] = None,
    ):
        if workers is None:
            c = os.cpu_count() or 2
            workers = max(1, c - 1)
        self.executor = executor
        self.controller = controller
        self.gates = gates
        self.workers = workers
        self.tick_interval = tick_interval
        self.on_transition = on_transition

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, graph: Graph, trigger: TriggerEvent, *, run_id: str | None = None) -> RunRecord:
        run = Run(graph, trigger, run_id)
        self.execute(run)
        return run.record

    def execute(self, run: Run, *, signal_done: bool = True) -> RunSummary:
        approvals = self.gates.approvals
        approvals.subscribe(run.wake)
        try:
            return self._loop(run)
        finally:
            approvals.unsubscribe(run.wake)
            approvals.discard_run(run.id)
            if signal_done:
                run.done.set()

    # ------------------------------------------------------------------
    # Coordinating loop (only this thread touches the sets below)
    # ------------------------------------------------------------------

    def _loop(self, run: Run) -> RunSummary:
        graph, record = run.graph, run.record
        ctx = GateContext(run_id=run.id, trigger=run.trigger)

        completed: Set[str] = set()     # satisfies dependents
        failed: Set[str] = set()        # required failures
        started: Set[str] = set()       # dispatched or resolved
        in_flight: Dict[Future, str] = {}
        busy_groups: Dict[str, str] = {}

        record.set_status(RunStatus.RUNNING)
        log.info("run start run=%s ref=%s commit=%s stages=%d", run.id, run.trigger.ref, run.trigger.commit, len(graph))

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=f"stageflow-{run.id}") as pool:
            while True:
                if run.cancel_event.is_set():
                    self._cancel_outstanding(run)

                outstanding: List[str] = []
                resolved = False    # something finished without a worker; recompute ready set
                if not run.cancel_event.is_set():
                    for name in graph.ready(completed, failed, started):
                        stage = graph[name]
                        status = record.status_of(name)
                        if status is StageStatus.PENDING:
                            self._move(run, name, StageStatus.READY)
                            status = StageStatus.READY

                        decision = self.gates.evaluate(stage, ctx)

                        if decision.verdict is Verdict.BLOCK:
                            self._move(run, name, StageStatus.SKIPPED, SKIP_CONDITION)
                            log.info("stage skipped run=%s stage=%s: %s", run.id, name, decision.reason)
                            started.add(name)
                            completed.add(name)
                            resolved = True
                            continue

                        if decision.verdict is Verdict.PENDING:
                            if decision.expired:
                                started.add(name)
                                self._move(run, name, StageStatus.FAILED, decision.reason)
                                self._fail(run, stage, completed, failed)
                                resolved = True
                                continue
                            if status is not StageStatus.WAITING:
                                self._move(run, name, StageStatus.WAITING, decision.reason)
                            outstanding.append(name)
                            continue

                        group = stage.concurrency_group
                        if len(in_flight) >= self.workers or (group is not None and group in busy_groups):
                            outstanding.append(name)
                            continue

                        started.add(name)
                        if group is not None:
                            busy_groups[group] = name
                        self._move(run, name, StageStatus.RUNNING)
                        fut = pool.submit(self._execute_stage, run, stage)
                        in_flight[fut] = name

                if resolved:
                    continue

                if not in_flight and not outstanding:
                    break

                if in_flight:
                    # an approval or cancel resolves the wake future and ends the wait early
                    done, _ = wait(
                        [*in_flight, run.wake.future()],
                        timeout=self.tick_interval,
                        return_when=FIRST_COMPLETED,
                    )
                    for fut in done:
                        if fut not in in_flight:
                            continue
                        name = in_flight.pop(fut)
                        stage = graph[name]
                        if stage.concurrency_group is not None:
                            busy_groups.pop(stage.concurrency_group, None)
                        self._complete(run, stage, fut.result(), completed, failed)
                else:
                    run.wake.wait(self.tick_interval)
                run.wake.clear()

        final = RunStatus.CANCELLED if run.cancel_event.is_set() else record.verdict()
        summary = record.finalize(final)
        log.info("run finished run=%s status=%s", run.id, summary.status.value)
        return summary

    def _move(self, run: Run, stage: str, to_state: StageStatus, reason: str | None = None) -> None:
        t = run.record.transition(stage, to_state, reason)
        if self.on_transition is not None:
            self.on_transition(run, t)

    def _complete(self, run: Run, stage: Stage, result: StageResult, completed: Set[str], failed: Set[str]) -> None:
        self._move(run, stage.id, result.status, result.reason)
        if result.status is StageStatus.SUCCEEDED:
            completed.add(stage.id)
        elif result.status is StageStatus.FAILED:
            self._fail(run, stage, completed, failed)

    def _fail(self, run: Run, stage: Stage, completed: Set[str], failed: Set[str]) -> None:
        if not stage.required:
            # best-effort: the failure is recorded but dependents may proceed
            log.warning("best-effort stage failed run=%s stage=%s", run.id, stage.id)
            completed.add(stage.id)
            return
        failed.add(stage.id)
        for dep in run.graph.descendants(stage.id):
            if not run.record.status_of(dep).terminal:
                self._move(run, dep, StageStatus.SKIPPED, SKIP_UPSTREAM_FAILED)

    def _cancel_outstanding(self, run: Run) -> None:
        for name, status in run.record.statuses().items():
            if status in (StageStatus.PENDING, StageStatus.READY, StageStatus.WAITING):
                self._move(run, name, StageStatus.CANCELLED, "run cancelled")

    # ------------------------------------------------------------------
    # Worker side (never raises; errors are contained at the stage boundary)
    # ------------------------------------------------------------------

    def _execute_stage(self, run: Run, stage: Stage) -> StageResult:
        try:
            if stage.is_deploy:
                return self._execute_deploy(run, stage)
            return self._execute_command(run, stage)
        except Exception as e:
            log.exception("stage crashed run=%s stage=%s", run.id, stage.id)
            return StageResult(stage.id, StageStatus.FAILED, f"{type(e).__name__}: {e}")

    def _execute_command(self, run: Run, stage: Stage) -> StageResult:
        cancel = run.cancel_event
        attempts = max(1, stage.retry.max_attempts)
        last_error: StageExecutionError | None = None

        command = replace(stage.command, env={**run_env(run), **stage.command.env})

        for attempt in range(1, attempts + 1):
            if cancel.is_set():
                return StageResult(stage.id, StageStatus.CANCELLED, "run cancelled")

            try:
                res = self.executor.execute(command, stage.timeout, cancel, label=f"{run.id}-{stage.id}")
            except Exception as e:
                run.record.note_attempt(stage.id, attempt)
                last_error = StageExecutionError(stage.id, attempt, None, f"{type(e).__name__}: {e}")
            else:
                run.record.note_attempt(stage.id, attempt, res.logs_ref)
                if res.ok:
                    return StageResult(stage.id, StageStatus.SUCCEEDED)
                if res.cancelled:
                    return StageResult(stage.id, StageStatus.CANCELLED, "run cancelled")
                message = f"timed out after {stage.timeout:.0f}s" if res.timed_out else "command failed"
                last_error = StageExecutionError(stage.id, attempt, res.exit_status, message, res.logs_ref)

            log.warning("run=%s %s", run.id, last_error)
            if attempt < attempts:
                delay = stage.retry.delay(attempt)
                log.info("retrying stage=%s in %.1fs (%d/%d)", stage.id, delay, attempt + 1, attempts)
                if cancel.wait(delay):
                    return StageResult(stage.id, StageStatus.CANCELLED, "run cancelled")

        return StageResult(stage.id, StageStatus.FAILED, str(last_error))

    def _execute_deploy(self, run: Run, stage: Stage) -> StageResult:
        reference = run.trigger.render(stage.image or "")
        run.record.note_attempt(stage.id, 1)
        try:
            outcome = self.controller.deploy(
                stage.environment,
                reference,
                cancel=run.cancel_event,
                run_id=run.id,
                stage=stage.id,
            )
        except RollbackFailure as e:
            if e.outcome is not None:
                run.record.add_deployment(e.outcome)
            return StageResult(stage.id, StageStatus.FAILED, f"RollbackFailure: {e}")

        run.record.add_deployment(outcome)
        if outcome.promoted:
            return StageResult(stage.id, StageStatus.SUCCEEDED, f"promoted {reference}")
        if outcome.result == "cancelled":
            return StageResult(stage.id, StageStatus.CANCELLED, outcome.reason)
        return StageResult(stage.id, StageStatus.FAILED, outcome.reason)
