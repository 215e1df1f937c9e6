import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from skyclf.api.dependencies import get_engine, get_orchestrator, get_settings
from skyclf.config import Settings
from skyclf.exceptions import (
    ConflictError,
    EngineClosedError,
    ImagePreprocessError,
    InferenceError,
    ModelDataError,
    RemoteFailure,
)
from skyclf.models.schemas import (
    MessageResponse,
    ModelSummaryResponse,
    ModelVersionsResponse,
    PredictionResponse,
    PredictRequest,
    TrainRequest,
    TrainStatusResponse,
)
from skyclf.services.inference_engine import InferenceEngine
from skyclf.services.model_registry import list_versions
from skyclf.services.training_orchestrator import TrainingOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


# ==================== Trainer ====================


@router.post("/trainer/start", response_model=MessageResponse, tags=["trainer"])
async def start_training(
    request: Optional[TrainRequest] = None,
    orchestrator: TrainingOrchestrator = Depends(get_orchestrator),
):
    """Start a training run; 409 if one is already in progress."""
    request = request or TrainRequest()
    try:
        await orchestrator.start(request.to_config())
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except RemoteFailure as e:
        logger.error(f"Failed to start training: {e}")
        raise HTTPException(status_code=502, detail=e.message)

    return MessageResponse(status="started", message="training started")


@router.post("/trainer/stop", response_model=MessageResponse, tags=["trainer"])
async def stop_training(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.stop()
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except RemoteFailure as e:
        logger.error(f"Failed to stop training: {e}")
        raise HTTPException(status_code=502, detail=e.message)

    return MessageResponse(status="stopped", message="training stop requested")


@router.get("/trainer/status", response_model=TrainStatusResponse, tags=["trainer"])
async def training_status(orchestrator: TrainingOrchestrator = Depends(get_orchestrator)):
    status = await orchestrator.status()
    return TrainStatusResponse(**status.to_dict())


# ==================== Models ====================


@router.get("/models", response_model=ModelSummaryResponse, tags=["models"])
def model_summary(engine: InferenceEngine = Depends(get_engine)):
    return ModelSummaryResponse(**engine.model_summary())


@router.get("/models/versions", response_model=ModelVersionsResponse, tags=["models"])
def model_versions(engine: InferenceEngine = Depends(get_engine)):
    try:
        versions = list_versions(engine.models_dir, task=engine.task, prefix=engine.version_prefix)
    except ModelDataError as e:
        raise HTTPException(status_code=500, detail=e.message)
    return ModelVersionsResponse(versions=versions, latest=versions[-1] if versions else None)


@router.post("/models/reload", response_model=MessageResponse, tags=["models"])
def reload_models(
    version: str = Query("", description="Version to pin, e.g. v3; empty for latest"),
    engine: InferenceEngine = Depends(get_engine),
):
    try:
        swapped = engine.reload(version=version)
    except (ModelDataError, InferenceError) as e:
        logger.error(f"Model reload failed: {e}")
        raise HTTPException(status_code=500, detail=e.message)
    except EngineClosedError as e:
        raise HTTPException(status_code=503, detail=e.message)

    message = "models reloaded" if swapped else "model unchanged"
    return MessageResponse(status="ok", message=message)


# ==================== Inference ====================


@router.post("/predict", response_model=PredictionResponse, tags=["inference"])
def predict(
    request: PredictRequest,
    engine: InferenceEngine = Depends(get_engine),
    settings: Settings = Depends(get_settings),
):
    images_dir = Path(settings.images_dir).resolve()
    image_path = (images_dir / request.image_path).resolve()
    if not image_path.is_relative_to(images_dir):
        raise HTTPException(status_code=400, detail="image_path must stay inside the images directory")

    try:
        prediction = engine.predict(image_path)
    except ImagePreprocessError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except InferenceError as e:
        logger.error(f"Inference failed for {image_path}: {e}")
        raise HTTPException(status_code=500, detail="prediction failed")
    except EngineClosedError as e:
        raise HTTPException(status_code=503, detail=e.message)

    if prediction is None:
        raise HTTPException(status_code=503, detail="no prediction")
    return PredictionResponse(**prediction.to_dict())
