from .config import PipelineDefinition, Settings, load_pipeline
from .dsl import best_effort, deploy, environment, flow, matrix, stage
from .model import RunStatus, StageStatus, TriggerEvent, TriggerKind
from .service import PipelineService

__all__ = [
    "flow",
    "stage",
    "deploy",
    "environment",
    "best_effort",
    "matrix",
    "load_pipeline",
    "PipelineDefinition",
    "Settings",
    "PipelineService",
    "TriggerEvent",
    "TriggerKind",
    "RunStatus",
    "StageStatus",
]
