"""
Request and response schemas for the HTTP surface.
"""

from .schemas import (
    MessageResponse,
    ModelSummaryResponse,
    ModelVersionsResponse,
    PredictionResponse,
    PredictRequest,
    TrainRequest,
    TrainStatusResponse,
)

__all__ = [
    "MessageResponse",
    "ModelSummaryResponse",
    "ModelVersionsResponse",
    "PredictionResponse",
    "PredictRequest",
    "TrainRequest",
    "TrainStatusResponse",
]
