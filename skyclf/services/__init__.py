"""
Service layer: model discovery, inference and training orchestration.
"""

from .container_platform import ContainerPlatform
from .inference_engine import InferenceEngine, Prediction
from .model_registry import ModelVersion, find_model, list_versions
from .training_orchestrator import TrainConfig, TrainingOrchestrator, TrainStatus

__all__ = [
    "ContainerPlatform",
    "InferenceEngine",
    "Prediction",
    "ModelVersion",
    "find_model",
    "list_versions",
    "TrainConfig",
    "TrainingOrchestrator",
    "TrainStatus",
]
