"""Console output formatting utilities for stageflow."""

from __future__ import annotations

import sys
from typing import Any, Dict, List, Optional

from ..model import StageStatus
from ..record import RunSummary, StageTransition


STATUS_LABELS = {
    StageStatus.SUCCEEDED: "SUCCESS",
    StageStatus.FAILED: "FAILED",
    StageStatus.SKIPPED: "SKIPPED",
    StageStatus.CANCELLED: "CANCELLED",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        pipeline: str,
        ref: str,
        commit: str,
        stage_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run: {run_id}")
        print(f"Pipeline: {pipeline}")
        print(f"Ref: {ref} @ {commit[:12]}")
        print(f"Stages: {stage_count}")
        print()

    def print_plan(self, waves: List[List[str]]) -> None:
        """Print the ready waves of a pipeline."""
        self.print_header("PLAN")
        for i, wave in enumerate(waves, start=1):
            print(f"  wave {i}: {', '.join(wave)}")

    def print_transition(self, t: StageTransition) -> None:
        """Print a stage state change (only the interesting ones)."""
        if t.to_state is StageStatus.RUNNING:
            print(f"STAGE STARTED: {t.stage}")
        elif t.to_state is StageStatus.WAITING:
            print(f"STAGE WAITING: {t.stage} ({t.reason})")
        elif t.to_state.terminal:
            label = STATUS_LABELS[t.to_state]
            if t.reason and (self.debug or t.to_state is not StageStatus.SUCCEEDED):
                # first line only unless debugging
                reason = t.reason if self.debug else t.reason.split("\n")[0]
                print(f"STAGE {label}: {t.stage} ({reason})")
            else:
                print(f"STAGE {label}: {t.stage}")

    def print_results(self, summary: RunSummary) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print(f"RESULTS ({summary.status.value.upper()})")
        print("=" * 40)
        for s in summary.stages.values():
            label = STATUS_LABELS.get(s.status, s.status.value.upper())
            marker = "" if s.required else " [best-effort]"
            print(f"  {s.id}: {label}{marker}")
            if s.status is not StageStatus.SUCCEEDED and s.reason:
                print(f"      {s.reason.splitlines()[0]}")
        for d in summary.deployments:
            print(f"  deploy {d.environment}: {d.result} {d.reference}")

    def print_environments(self, environments: List[Dict[str, Any]]) -> None:
        """Print environment table."""
        self.print_header("ENVIRONMENTS")
        if not environments:
            print("  (none)")
        for env in environments:
            current = env.get("current_reference") or "-"
            promoted = env.get("last_promoted_at") or "never"
            print(f"  {env['name']}: {current} (promoted: {promoted}, state: {env.get('state', '?')})")
            if env.get("incident"):
                print(f"      INCIDENT: {env['incident']}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
