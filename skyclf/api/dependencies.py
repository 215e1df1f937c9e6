from fastapi import HTTPException, Request

from skyclf.config import Settings
from skyclf.services.inference_engine import InferenceEngine
from skyclf.services.training_orchestrator import TrainingOrchestrator


def get_settings(request: Request) -> Settings:
    """Dependency that provides the application's settings"""
    return request.app.state.settings


def get_engine(request: Request) -> InferenceEngine:
    """Dependency that provides the shared InferenceEngine"""
    return request.app.state.engine


def get_orchestrator(request: Request) -> TrainingOrchestrator:
    """Dependency that provides the TrainingOrchestrator, if training is enabled"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="training disabled")
    return orchestrator
