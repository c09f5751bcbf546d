from __future__ import annotations

import pytest

from stageflow import PipelineService

from fakes import FakeExecutor, FakeOrchestrator


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def make_service(executor, orchestrator):
    services = []

    def _make(definition, **kwargs):
        kwargs.setdefault("executor", executor)
        kwargs.setdefault("orchestrator", orchestrator)
        svc = PipelineService(definition, **kwargs)
        services.append(svc)
        return svc

    yield _make

    # don't leak worker threads between tests
    for svc in services:
        for run in svc.intake.runs():
            run.cancel()
        for run in svc.intake.runs():
            run.wait(5)
