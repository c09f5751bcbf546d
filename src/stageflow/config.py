# config.py
from __future__ import annotations

import json
import os
import runpy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .dag import Graph, build_graph
from .environments import DeployPolicy, EnvironmentRegistry, ProtectionRules
from .errors import InvalidStageError
from .model import TEMPLATE_FIELDS, Command, RetryPolicy, Stage, TriggerKind, unknown_template_fields


# ----------------------------------------------------------------------
# Settings (configuration surface)
# ----------------------------------------------------------------------

# env var -> settings field
ENV_OVERRIDES = {
    "STAGEFLOW_WORKERS": "workers",
    "STAGEFLOW_STAGE_TIMEOUT": "stage_timeout",
    "STAGEFLOW_RETRY_MAX_ATTEMPTS": "retry_max_attempts",
    "STAGEFLOW_RETRY_BACKOFF_BASE": "retry_backoff_base",
    "STAGEFLOW_SAME_REF_POLICY": "same_ref_policy",
    "STAGEFLOW_LOG_DIR": "log_dir",
}


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # stages
    stage_timeout: float = Field(600.0, gt=0)
    retry_max_attempts: int = Field(1, ge=1)
    retry_backoff_base: float = Field(2.0, ge=0)

    # scheduler
    workers: Optional[int] = Field(None, ge=1)
    tick_interval: float = Field(1.0, gt=0)
    same_ref_policy: Literal["supersede", "queue"] = "supersede"
    approval_timeout: Optional[float] = Field(None, gt=0)

    # deployments
    rollout_timeout: float = Field(300.0, gt=0)
    rollout_poll_interval: float = Field(5.0, ge=0)
    probe_path: str = "/healthz"
    probe_interval: float = Field(5.0, ge=0)
    probe_attempts: int = Field(5, ge=1)

    log_dir: str = ".stageflow/logs"

    def deploy_policy(self) -> DeployPolicy:
        return DeployPolicy(
            rollout_timeout=self.rollout_timeout,
            rollout_poll_interval=self.rollout_poll_interval,
            probe_path=self.probe_path,
            probe_interval=self.probe_interval,
            probe_attempts=self.probe_attempts,
        )

    def with_env(self, environ: Mapping[str, str] | None = None) -> Settings:
        """Return a copy with STAGEFLOW_* environment variables applied."""
        environ = os.environ if environ is None else environ
        updates: Dict[str, Any] = {}
        for var, field_name in ENV_OVERRIDES.items():
            if environ.get(var):
                updates[field_name] = environ[var]
        if not updates:
            return self
        return Settings.model_validate({**self.model_dump(), **updates})


# ----------------------------------------------------------------------
# Loose definitions -> typed records
# ----------------------------------------------------------------------

class RetrySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: Optional[int] = Field(None, ge=1)
    backoff_base: Optional[float] = Field(None, ge=0)


class StageSpec(BaseModel):
    """
    One stage as written in a pipeline file.

    Either `run` (a command, optionally inside `container`) or
    `environment` + `image` (a deploy stage), never both.
    """
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    needs: List[str] = Field(default_factory=list)

    run: Optional[Union[str, List[str]]] = None
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    container: Optional[str] = None

    environment: Optional[str] = None
    image: Optional[str] = None

    concurrency_group: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0)
    retry: Optional[RetrySpec] = None
    required: bool = True

    branches: List[str] = Field(default_factory=list)
    events: List[TriggerKind] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_kind(self) -> StageSpec:
        if self.environment is not None:
            if self.run is not None:
                raise ValueError(f"stage '{self.id}': a deploy stage cannot also have `run`")
            if not self.image:
                raise ValueError(f"stage '{self.id}': deploy stage needs an `image`")
            try:
                unknown = unknown_template_fields(self.image)
            except ValueError as e:
                raise ValueError(f"stage '{self.id}': malformed image template {self.image!r}: {e}") from e
            if unknown:
                allowed = ", ".join("{" + f + "}" for f in sorted(TEMPLATE_FIELDS))
                raise ValueError(
                    f"stage '{self.id}': image {self.image!r} uses unknown placeholder(s) "
                    f"{', '.join(repr(u) for u in unknown)} (allowed: {allowed})"
                )
        elif self.run is None or self.run == "" or self.run == []:
            raise ValueError(f"stage '{self.id}': needs `run` (or `environment` + `image`)")
        return self

    def to_stage(self, settings: Settings) -> Stage:
        command = None
        if self.run is not None:
            argv = (self.run,) if isinstance(self.run, str) else tuple(self.run)
            command = Command(argv=argv, cwd=self.cwd, env=dict(self.env), image=self.container)

        retry = self.retry or RetrySpec()
        return Stage(
            id=self.id,
            needs=tuple(self.needs),
            command=command,
            concurrency_group=self.concurrency_group,
            timeout=self.timeout or settings.stage_timeout,
            retry=RetryPolicy(
                max_attempts=retry.max_attempts or settings.retry_max_attempts,
                backoff_base=settings.retry_backoff_base if retry.backoff_base is None else retry.backoff_base,
            ),
            required=self.required,
            branches=tuple(self.branches),
            events=tuple(self.events),
            environment=self.environment,
            image=self.image,
        )


class KubeTargetSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str
    deployment: str
    container: str
    url: str
    context: Optional[str] = None


class EnvironmentSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    required_reviewers: int = Field(0, ge=0)
    wait_timer: float = Field(0.0, ge=0)
    prevent_self_review: bool = False
    probe_path: Optional[str] = None
    # where the environment runs (used by the kubectl orchestrator)
    target: Optional[KubeTargetSpec] = None

    def protection(self) -> ProtectionRules:
        return ProtectionRules(
            required_reviewers=self.required_reviewers,
            wait_timer=self.wait_timer,
            prevent_self_review=self.prevent_self_review,
        )


class PipelineDefinition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "pipeline"
    stages: List[StageSpec] = Field(min_length=1)
    environments: List[EnvironmentSpec] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PipelineDefinition:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidStageError(f"Invalid pipeline definition:\n{e}") from e

    def to_stages(self) -> List[Stage]:
        return [s.to_stage(self.settings) for s in self.stages]

    def build_graph(self) -> Graph:
        """Validate the dependency structure; raises DefinitionError."""
        return build_graph(self.to_stages())

    def register_environments(self, registry: EnvironmentRegistry) -> None:
        for spec in self.environments:
            registry.define(spec.name, spec.protection(), probe_path=spec.probe_path)
        # environments only referenced by deploy stages get default rules
        for s in self.stages:
            if s.environment is not None:
                registry.ensure(s.environment)


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline from a file.

    Supported:
      - .py: defines pipeline() -> PipelineDefinition | dict, or PIPELINE = ...
      - .yaml / .yml / .json: a mapping with `stages`, `environments`, `settings`

    Raises:
      FileNotFoundError, ValueError (unsupported suffix), InvalidStageError
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix == ".py":
        module_name = f"stageflow_pipeline_{p.stem}"
        try:
            globals_dict = runpy.run_path(str(p), run_name=module_name)
            has_fn = "pipeline" in globals_dict and callable(globals_dict["pipeline"])
            data = globals_dict["pipeline"]() if has_fn else globals_dict.get("PIPELINE")
        except ValidationError as e:
            raise InvalidStageError(f"Invalid stage in {p.name}:\n{e}") from e
        if data is None:
            raise InvalidStageError(
                f"{p.name} must define pipeline() or PIPELINE (build it with stageflow.flow(...))"
            )
    elif p.suffix in (".yaml", ".yml"):
        with open(p, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    elif p.suffix == ".json":
        with open(p, encoding="utf-8") as f:
            data = json.load(f)
    else:
        raise ValueError(f"Pipeline must be a .py, .yaml, .yml or .json file, got: {p.name}")

    if isinstance(data, PipelineDefinition):
        return data
    if not isinstance(data, Mapping):
        raise InvalidStageError(f"{p.name} did not produce a pipeline mapping (got {type(data).__name__})")
    return PipelineDefinition.from_mapping(data)
