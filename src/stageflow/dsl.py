# src/stageflow/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .config import EnvironmentSpec, KubeTargetSpec, PipelineDefinition, RetrySpec, Settings, StageSpec


# ---------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------

def stage(
    id: str,
    run: Union[str, Sequence[str]],
    *,
    needs: Optional[List[str]] = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    container: str | None = None,
    concurrency_group: str | None = None,
    timeout: float | None = None,
    retries: int | None = None,
    backoff: float | None = None,
    required: bool = True,
    branches: Optional[List[str]] = None,
    events: Optional[List[str]] = None,
) -> StageSpec:
    """A command stage. `retries` is the max number of attempts."""
    retry = None
    if retries is not None or backoff is not None:
        retry = RetrySpec(max_attempts=retries, backoff_base=backoff)
    return StageSpec(
        id=id,
        run=run if isinstance(run, str) else list(run),
        needs=list(needs or []),
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        container=container,
        concurrency_group=concurrency_group,
        timeout=timeout,
        retry=retry,
        required=required,
        branches=list(branches or []),
        events=list(events or []),
    )


def best_effort(spec: StageSpec) -> StageSpec:
    """Mark a stage as allowed to fail without failing the run (e.g. a scan)."""
    return spec.model_copy(update={"required": False})


def deploy(
    id: str,
    environment: str,
    image: str,
    *,
    needs: Optional[List[str]] = None,
    concurrency_group: str | None = None,
    branches: Optional[List[str]] = None,
    events: Optional[List[str]] = None,
) -> StageSpec:
    """
    A deploy stage. `image` may use {commit}, {short_commit}, {ref} and
    {branch}, filled from the trigger event.
    """
    return StageSpec(
        id=id,
        environment=environment,
        image=image,
        needs=list(needs or []),
        concurrency_group=concurrency_group,
        branches=list(branches or []),
        events=list(events or []),
    )


def environment(
    name: str,
    *,
    required_reviewers: int = 0,
    wait_timer: float = 0.0,
    prevent_self_review: bool = False,
    probe_path: str | None = None,
    target: Optional[Dict[str, str]] = None,
) -> EnvironmentSpec:
    """
    A deployment environment. `target` locates it in the cluster:
    {"namespace", "deployment", "container", "url"} (+ optional "context").
    """
    return EnvironmentSpec(
        name=name,
        required_reviewers=required_reviewers,
        wait_timer=wait_timer,
        prevent_self_review=prevent_self_review,
        probe_path=probe_path,
        target=KubeTargetSpec(**target) if target else None,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).stages(
            lambda v: stage(f"test-py{v}", f"tox -e py{v.replace('.', '')}")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def stages(self, builder: Callable[[Any], StageSpec]) -> List[StageSpec]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def flow(
    *stages: Union[StageSpec, List[StageSpec]],
    environments: Optional[List[EnvironmentSpec]] = None,
    settings: Optional[Union[Settings, Dict[str, Any]]] = None,
    name: str = "pipeline",
) -> PipelineDefinition:
    """
    Pipeline definition helper. Named `flow` so a pipeline file can define
    its own `pipeline()` function:

        from stageflow import flow, stage, deploy

        def pipeline():
            return flow(
                stage("test", "pytest -q"),
                deploy("deploy-staging", "staging", "registry/app:{commit}", needs=["test"]),
            )

    Lists (e.g. from matrix(...).stages(...)) are flattened.
    """
    flat: List[StageSpec] = []
    for s in stages:
        if isinstance(s, list):
            flat.extend(s)
        else:
            flat.append(s)

    if isinstance(settings, dict):
        settings = Settings.model_validate(settings)

    return PipelineDefinition(
        name=name,
        stages=flat,
        environments=list(environments or []),
        settings=settings or Settings(),
    )
