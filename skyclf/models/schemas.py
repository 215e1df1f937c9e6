from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from skyclf.services.training_orchestrator import TrainConfig


class TrainRequest(BaseModel):
    """Request model for starting a training run"""

    epochs: int = Field(10, gt=0)
    batch_size: int = Field(16, gt=0)
    lr: float = Field(0.001, gt=0)
    img_size: int = Field(224, gt=0)
    seed: int = 42
    val_split: float = Field(0.2, ge=0, lt=1)
    from_scratch: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "epochs": 10,
                "batch_size": 16,
                "lr": 0.001,
                "img_size": 224,
                "seed": 42,
                "val_split": 0.2,
                "from_scratch": False,
            }
        }
    )

    def to_config(self) -> TrainConfig:
        return TrainConfig(**self.model_dump())


class TrainStatusResponse(BaseModel):
    """Trainer status response model"""

    running: bool
    state: str
    container_id: str = ""
    started_at: Optional[str] = None
    exit_code: Optional[int] = None
    error: str = ""
    logs: str = ""
    last_config: Optional[Dict[str, Any]] = None
    last_completed_run: int = 0

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "running": True,
                "state": "training",
                "container_id": "3f1c0a9d2b7e",
                "started_at": "2026-01-15T10:30:00+00:00",
                "exit_code": None,
                "error": "",
                "logs": "epoch 1/10 loss=0.693\n",
                "last_config": {"epochs": 10, "batch_size": 16},
                "last_completed_run": 2,
            }
        }
    )


class MessageResponse(BaseModel):
    status: str
    message: str


class ModelSummaryResponse(BaseModel):
    active: Optional[str] = None
    path: Optional[str] = None
    classes: Optional[List[str]] = None
    created_at: Optional[str] = None


class ModelVersionsResponse(BaseModel):
    versions: List[str]
    latest: Optional[str] = None


class PredictRequest(BaseModel):
    """Image to classify, relative to the configured images directory"""

    image_path: str = Field(..., min_length=1)


class PredictionResponse(BaseModel):
    skystate: str
    confidence: float
    probs: Dict[str, float]
    task: str
    model_version: str
    model_path: str
