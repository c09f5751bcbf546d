# service.py
from __future__ import annotations

import logging
import queue
from typing import Any, Dict, List, Optional

from .config import PipelineDefinition
from .environments import EnvironmentController, EnvironmentRegistry, OrchestrationAPI
from .errors import ApprovalError, UnknownRunError
from .executors import CommandExecutor
from .gates import ApprovalBook, GateEvaluator
from .model import TriggerEvent
from .record import DeploymentOutcome, RunSummary
from .runner import Run, Scheduler
from .triggers import Admission, SameRefPolicy, TriggerIntake

log = logging.getLogger(__name__)


class PipelineService:
    """
    Wires one pipeline definition to its collaborators and exposes the
    operator surface: trigger ingestion, approvals, cancellation,
    manual rollback and reporting.

    The environment registry is passed in (or created here) and shared by
    every run this service starts.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        *,
        executor: CommandExecutor,
        orchestrator: OrchestrationAPI,
        registry: EnvironmentRegistry | None = None,
        on_transition=None,
    ):
        self.definition = definition
        self.settings = definition.settings
        # fails fast on cycles / unknown needs: no run is ever created for a bad graph
        self.graph = definition.build_graph()

        self.registry = registry or EnvironmentRegistry()
        definition.register_environments(self.registry)

        self.controller = EnvironmentController(self.registry, orchestrator, self.settings.deploy_policy())
        self.approvals = ApprovalBook(self.registry)
        self.gates = GateEvaluator(self.registry, self.approvals, approval_timeout=self.settings.approval_timeout)
        self.scheduler = Scheduler(
            executor,
            self.controller,
            self.gates,
            workers=self.settings.workers,
            tick_interval=self.settings.tick_interval,
            on_transition=on_transition,
        )
        self.intake = TriggerIntake(self.graph, self.scheduler, SameRefPolicy(self.settings.same_ref_policy))
        self._finished: "queue.Queue[RunSummary]" = queue.Queue()
        self.intake.on_finished(self._finished.put)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def submit(self, trigger: TriggerEvent) -> Admission:
        return self.intake.submit(trigger)

    def run(self, run_id: str) -> Run:
        run = self.intake.get(run_id)
        if run is None:
            raise UnknownRunError(run_id)
        return run

    def wait(self, run_id: str, timeout: float | None = None) -> RunSummary:
        run = self.run(run_id)
        if not run.wait(timeout):
            raise TimeoutError(f"run {run_id} still {run.status.value} after {timeout}s")
        return run.summary()

    def cancel(self, run_id: str) -> RunSummary:
        run = self.run(run_id)
        run.cancel()
        return run.summary()

    def approve(self, run_id: str, environment: str, reviewer: str) -> Dict[str, Any]:
        """
        Record an approval. Allowed before the deploy stage reaches its gate;
        the reviewer is then held until the request opens.
        """
        run = self.run(run_id)
        if run.status.terminal:
            raise ApprovalError(f"run {run_id} is already {run.status.value}")
        appr = self.approvals.approve(run_id, environment, reviewer, actor=run.trigger.actor)
        run.wake.set()
        env = self.registry.get(environment)
        return {
            "run_id": run_id,
            "environment": environment,
            "reviewer": reviewer,
            "reviewers": sorted(appr.reviewers) if appr else [reviewer],
            "required": env.protection.required_reviewers,
        }

    # ------------------------------------------------------------------
    # Environments
    # ------------------------------------------------------------------

    def rollback(self, environment: str, target: str = "previous") -> DeploymentOutcome:
        return self.controller.rollback(environment, target)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_run_status(self, run_id: str) -> RunSummary:
        return self.run(run_id).summary()

    def list_runs(self) -> List[RunSummary]:
        return [r.summary() for r in self.intake.runs()]

    def list_environments(self) -> List[Dict[str, Any]]:
        return [env.describe() for env in self.registry.list()]

    def drain_finished(self) -> List[RunSummary]:
        """Summaries of runs that finished since the last call."""
        out: List[RunSummary] = []
        while True:
            try:
                out.append(self._finished.get_nowait())
            except queue.Empty:
                return out

    def find_run(self, run_id: str) -> Optional[Run]:
        return self.intake.get(run_id)
