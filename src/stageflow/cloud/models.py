from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on postgres, plain JSON elsewhere (sqlite in tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit: Mapped[str] = mapped_column(sa.Text, nullable=False)
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=True)
    summary_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)


class StageRow(Base):
    __tablename__ = "stage_results"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    stage: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    required: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    logs_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)


class DeploymentRow(Base):
    __tablename__ = "deployments"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    # NULL for manual rollbacks
    run_id: Mapped[str | None] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="SET NULL"), nullable=True)
    stage: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    environment: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    reference: Mapped[str] = mapped_column(sa.Text, nullable=False)
    previous: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    result: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(sa.TIMESTAMP(timezone=True), nullable=False)
