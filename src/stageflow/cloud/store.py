from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..record import DeploymentOutcome, RunSummary
from .models import Base, DeploymentRow, RunRow, StageRow

log = logging.getLogger(__name__)


def _deployment_row(d: DeploymentOutcome) -> DeploymentRow:
    return DeploymentRow(
        run_id=d.run_id,
        stage=d.stage,
        environment=d.environment,
        reference=d.reference,
        previous=d.previous,
        result=d.result,
        reason=d.reason,
        started_at=d.started_at,
        finished_at=d.finished_at,
    )


class RunStore:
    """Persists finished runs and deployment history."""

    def __init__(self, engine: AsyncEngine, sessions: async_sessionmaker[AsyncSession]):
        self.engine = engine
        self.sessions = sessions

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def save_run(self, summary: RunSummary) -> None:
        async with self.sessions() as s:
            async with s.begin():
                await s.merge(RunRow(
                    id=summary.run_id,
                    kind=summary.trigger.kind.value,
                    ref=summary.trigger.ref,
                    commit=summary.trigger.commit,
                    actor=summary.trigger.actor,
                    status=summary.status.value,
                    created_at=summary.created_at,
                    finished_at=summary.finished_at,
                    summary_json=summary.to_dict(),
                ))
                await s.execute(sa.delete(StageRow).where(StageRow.run_id == summary.run_id))
                await s.execute(sa.delete(DeploymentRow).where(DeploymentRow.run_id == summary.run_id))
                for st in summary.stages.values():
                    s.add(StageRow(
                        run_id=summary.run_id,
                        stage=st.id,
                        status=st.status.value,
                        reason=st.reason,
                        attempts=st.attempts,
                        required=st.required,
                        logs_ref=st.logs_ref,
                    ))
                for d in summary.deployments:
                    s.add(_deployment_row(d))
        log.debug("stored run %s (%s)", summary.run_id, summary.status.value)

    async def save_deployment(self, outcome: DeploymentOutcome) -> None:
        async with self.sessions() as s:
            async with s.begin():
                s.add(_deployment_row(outcome))

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        async with self.sessions() as s:
            row = await s.get(RunRow, run_id)
            return dict(row.summary_json) if row else None

    async def deployments(self, environment: str) -> List[Dict[str, Any]]:
        """Deployment history of one environment, oldest first."""
        async with self.sessions() as s:
            q = (
                sa.select(DeploymentRow)
                .where(DeploymentRow.environment == environment)
                .order_by(DeploymentRow.id)
            )
            rows = (await s.execute(q)).scalars().all()
            return [
                {
                    "run_id": r.run_id,
                    "stage": r.stage,
                    "reference": r.reference,
                    "previous": r.previous,
                    "result": r.result,
                    "reason": r.reason,
                    "finished_at": r.finished_at.isoformat(),
                }
                for r in rows
            ]
