# triggers.py
from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from .dag import Graph
from .model import RunStatus, StageStatus, TriggerEvent
from .record import RunSummary
from .runner import Run, Scheduler

log = logging.getLogger(__name__)


class SameRefPolicy(str, enum.Enum):
    SUPERSEDE = "supersede"     # newest wins: in-flight run for the ref is cancelled
    QUEUE = "queue"             # runs for the same ref execute one after another


@dataclass(frozen=True)
class Admission:
    run: Run
    duplicate: bool = False
    queued: bool = False


class TriggerIntake:
    """
    Admits trigger events and turns them into runs.

    - At-least-once delivery: an event whose ref+commit matches a run that
      is still active (running or waiting its turn) returns that run.
    - Same ref, different commit: handled per `policy`.

    Each admitted run executes on its own thread; the Scheduler inside it
    owns the worker pool.
    """

    def __init__(
        self,
        graph: Graph,
        scheduler: Scheduler,
        policy: SameRefPolicy = SameRefPolicy.SUPERSEDE,
    ):
        self.graph = graph
        self.scheduler = scheduler
        self.policy = SameRefPolicy(policy)
        self._lock = threading.RLock()
        self._runs: Dict[str, Run] = {}
        self._active: Dict[str, Run] = {}                 # ref -> executing run
        self._waiting: Dict[str, Deque[Run]] = {}         # ref -> admitted, not started
        self._listeners: List[Callable[[RunSummary], None]] = []

    def on_finished(self, fn: Callable[[RunSummary], None]) -> None:
        self._listeners.append(fn)

    def get(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[Run]:
        with self._lock:
            return list(self._runs.values())

    def submit(self, trigger: TriggerEvent) -> Admission:
        with self._lock:
            dup = self._find_live(trigger)
            if dup is not None:
                log.info("duplicate trigger ref=%s commit=%s -> run=%s", trigger.ref, trigger.commit, dup.id)
                return Admission(dup, duplicate=True)

            run = Run(self.graph, trigger)
            self._runs[run.id] = run
            active = self._active.get(trigger.ref)

            if active is None:
                self._start(run)
                return Admission(run)

            queue = self._waiting.setdefault(trigger.ref, deque())
            if self.policy is SameRefPolicy.SUPERSEDE:
                log.info("run=%s supersedes run=%s on ref=%s", run.id, active.id, trigger.ref)
                while queue:
                    self._abandon(queue.popleft(), f"superseded by run {run.id}")
                active.cancel()
            queue.append(run)
            return Admission(run, queued=True)

    def _find_live(self, trigger: TriggerEvent) -> Optional[Run]:
        ref = trigger.ref
        candidates = list(self._waiting.get(ref, ()))
        if ref in self._active:
            candidates.append(self._active[ref])
        for run in candidates:
            if run.trigger.dedup_key == trigger.dedup_key:
                return run
        return None

    def _start(self, run: Run) -> None:
        # caller holds the lock
        self._active[run.trigger.ref] = run
        t = threading.Thread(target=self._execute, args=(run,), name=f"stageflow-run-{run.id}", daemon=True)
        t.start()

    def _execute(self, run: Run) -> None:
        try:
            summary = self.scheduler.execute(run, signal_done=False)
        except Exception:
            log.exception("run=%s crashed", run.id)
            summary = self._abort(run, "scheduler crashed")
        finally:
            with self._lock:
                ref = run.trigger.ref
                if self._active.get(ref) is run:
                    del self._active[ref]
                queue = self._waiting.get(ref)
                if queue:
                    self._start(queue.popleft())
                if queue is not None and not queue:
                    del self._waiting[ref]
        self._notify(summary)
        run.done.set()

    def _abandon(self, run: Run, reason: str) -> None:
        """Cancel a run that never started."""
        run.cancel_event.set()
        summary = self._abort(run, reason)
        self._notify(summary)
        run.done.set()

    def _abort(self, run: Run, reason: str) -> RunSummary:
        record = run.record
        if record.finalized:
            return record.snapshot()
        for name, status in record.statuses().items():
            if not status.terminal:
                to_state = StageStatus.CANCELLED if status is not StageStatus.RUNNING else StageStatus.FAILED
                record.transition(name, to_state, reason)
        return record.finalize(RunStatus.CANCELLED if run.cancel_event.is_set() else RunStatus.FAILED)

    def _notify(self, summary: RunSummary) -> None:
        for fn in list(self._listeners):
            try:
                fn(summary)
            except Exception:
                log.exception("run-finished listener failed for run=%s", summary.run_id)
