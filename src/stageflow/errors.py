# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List


class StageflowError(Exception):
    """Base class for everything stageflow raises on purpose."""


# ----------------------------------------------------------------------
# Definition errors (fatal at load time; no Run is created)
# ----------------------------------------------------------------------

class DefinitionError(StageflowError):
    pass


@dataclass
class CycleError(DefinitionError):
    stages: List[str]

    def __str__(self) -> str:
        return f"Pipeline has a dependency cycle. Stuck stages: {self.stages}"


@dataclass
class UnknownDependencyError(DefinitionError):
    stage: str
    missing: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Stage '{self.stage}' needs missing stage '{self.missing}'. "
            f"Known stages: {sorted(self.known)}"
        )


@dataclass
class DuplicateStageError(DefinitionError):
    stages: List[str]

    def __str__(self) -> str:
        return f"Duplicate stage ids found: {self.stages}"


class InvalidStageError(DefinitionError):
    """A stage definition is malformed (bad field, missing command, ...)."""


# ----------------------------------------------------------------------
# Stage execution
# ----------------------------------------------------------------------

@dataclass
class StageExecutionError(StageflowError):
    stage: str
    attempt: int
    exit_status: int | None
    message: str
    logs_ref: str | None = None

    def __str__(self) -> str:
        exit_part = f" (exit={self.exit_status})" if self.exit_status is not None else ""
        return f"[{self.stage}] attempt {self.attempt} failed{exit_part}: {self.message}"


# ----------------------------------------------------------------------
# Deployments
# ----------------------------------------------------------------------

@dataclass
class DeploymentError(StageflowError):
    environment: str
    reference: str
    message: str
    # DeploymentOutcome recorded before the error surfaced, if any
    outcome: Any = None

    def __str__(self) -> str:
        return f"[{self.environment}] {self.reference}: {self.message}"


class DeployTimeoutError(DeploymentError):
    """Rollout did not report available within the bounded wait."""


class HealthCheckFailure(DeploymentError):
    """Health probe kept failing after all attempts."""


class DeployCancelled(DeploymentError):
    """The run was cancelled while the deployment was in flight."""


class RollbackFailure(DeploymentError):
    """
    Reasserting a known-good reference failed verification.

    Fatal: the environment needs manual operator action and is never
    rolled back again automatically.
    """


# ----------------------------------------------------------------------
# Operator / reporting surface
# ----------------------------------------------------------------------

class ApprovalError(StageflowError):
    pass


class UnknownRunError(StageflowError, KeyError):
    def __str__(self) -> str:
        return f"Unknown run: {self.args[0]}"


class UnknownEnvironmentError(StageflowError, KeyError):
    def __str__(self) -> str:
        return f"Unknown environment: {self.args[0]}"
