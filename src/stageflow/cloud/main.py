from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..errors import ApprovalError, DeploymentError, RollbackFailure, UnknownEnvironmentError, UnknownRunError
from ..model import TriggerEvent, TriggerKind
from ..service import PipelineService
from . import redisq
from .settings import DRAIN_INTERVAL, TRIGGER_DEDUP_SECONDS
from .store import RunStore

log = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class TriggerRequest(BaseModel):
    kind: TriggerKind = TriggerKind.PUSH
    ref: str = Field(min_length=1)
    commit: str = Field(min_length=1)
    actor: str = Field(min_length=1)

class TriggerResponse(BaseModel):
    run_id: str
    status: str
    duplicate: bool = False
    queued: bool = False

class ApprovalRequest(BaseModel):
    environment: str
    reviewer: str

class ApprovalResponse(BaseModel):
    run_id: str
    environment: str
    reviewer: str
    reviewers: list[str]
    required: int

class RollbackRequest(BaseModel):
    target: str = "previous"


def create_app(
    service: PipelineService,
    *,
    store: Optional[RunStore] = None,
    redis_client: Any = None,
    drain_interval: float = DRAIN_INTERVAL,
) -> FastAPI:
    """
    Control plane around one PipelineService.

    `store` persists finished runs; `redis_client` deduplicates triggers
    across replicas. Both are optional.
    """

    async def drain_once() -> None:
        for summary in service.drain_finished():
            if store is not None:
                await store.save_run(summary)
            if redis_client is not None:
                await redisq.release_trigger(redis_client, summary.trigger)

    async def drain_forever() -> None:
        while True:
            try:
                await drain_once()
            except Exception:
                log.exception("failed to persist finished runs")
            await asyncio.sleep(drain_interval)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        if store is not None:
            await store.create_all()
        task = asyncio.create_task(drain_forever())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await drain_once()

    app = FastAPI(title="stageflow control plane", lifespan=lifespan)
    app.state.service = service
    app.state.drain = drain_once

    # -------------------- Triggers / runs --------------------

    @app.post("/triggers", response_model=TriggerResponse)
    async def trigger(req: TriggerRequest):
        event = TriggerEvent(kind=req.kind, ref=req.ref, commit=req.commit, actor=req.actor)

        if redis_client is not None:
            owner = await redisq.claim_trigger(redis_client, event, TRIGGER_DEDUP_SECONDS)
            if owner is not None:
                local = service.find_run(owner)
                status = local.status.value if local else "pending"
                return TriggerResponse(run_id=owner, status=status, duplicate=True)

        admission = service.submit(event)
        if redis_client is not None:
            await redisq.bind_trigger(redis_client, event, admission.run.id)

        return TriggerResponse(
            run_id=admission.run.id,
            status=admission.run.status.value,
            duplicate=admission.duplicate,
            queued=admission.queued,
        )

    @app.get("/runs")
    async def list_runs():
        return [s.to_dict() for s in service.list_runs()]

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        try:
            return service.get_run_status(run_id).to_dict()
        except UnknownRunError:
            pass
        if store is not None:
            stored = await store.get_run(run_id)
            if stored is not None:
                return stored
        raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str):
        try:
            return service.cancel(run_id).to_dict()
        except UnknownRunError:
            raise HTTPException(status_code=404, detail="Run not found")

    @app.post("/runs/{run_id}/approvals", response_model=ApprovalResponse)
    async def approve(run_id: str, req: ApprovalRequest):
        try:
            return service.approve(run_id, req.environment, req.reviewer)
        except UnknownRunError:
            raise HTTPException(status_code=404, detail="Run not found")
        except UnknownEnvironmentError:
            raise HTTPException(status_code=404, detail=f"Unknown environment: {req.environment}")
        except ApprovalError as e:
            raise HTTPException(status_code=403, detail=str(e))

    # -------------------- Environments --------------------

    @app.get("/environments")
    async def list_environments():
        return service.list_environments()

    @app.get("/environments/{name}/deployments")
    async def environment_deployments(name: str):
        if name not in service.registry:
            raise HTTPException(status_code=404, detail=f"Unknown environment: {name}")
        if store is not None:
            return await store.deployments(name)
        return [o.to_dict() for o in service.controller.outcomes() if o.environment == name]

    @app.post("/environments/{name}/rollback")
    async def rollback(name: str, req: RollbackRequest):
        # the controller blocks while it waits for the rollout
        try:
            outcome = await asyncio.to_thread(service.rollback, name, req.target)
        except UnknownEnvironmentError:
            raise HTTPException(status_code=404, detail=f"Unknown environment: {name}")
        except RollbackFailure as e:
            if store is not None and e.outcome is not None:
                await store.save_deployment(e.outcome)
            raise HTTPException(status_code=409, detail=str(e))
        except DeploymentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if store is not None:
            await store.save_deployment(outcome)
        return outcome.to_dict()

    return app


def app_factory() -> FastAPI:
    """Entry point for `uvicorn --factory stageflow.cloud.main:app_factory`."""
    from ..config import load_pipeline
    from ..executors import LocalExecutor
    from ..kube import orchestrator_from_definition
    from . import settings
    from .db import make_session_factory

    definition = load_pipeline(settings.PIPELINE)
    definition = definition.model_copy(update={"settings": definition.settings.with_env()})
    service = PipelineService(
        definition,
        executor=LocalExecutor(log_dir=definition.settings.log_dir),
        orchestrator=orchestrator_from_definition(definition),
    )

    store = None
    if settings.DATABASE_URL:
        store = RunStore(*make_session_factory(settings.DATABASE_URL))

    redis_client = redisq.make_client(settings.REDIS_URL) if settings.REDIS_URL else None
    return create_app(service, store=store, redis_client=redis_client)
