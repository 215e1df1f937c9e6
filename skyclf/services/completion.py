"""
Completion glue: the single coupling between training and serving.

A training run that exits with code 0 has exported a new model version;
the registered listener hot-reloads the inference engine to the latest one.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from skyclf.exceptions import SkyClfError
from skyclf.services.inference_engine import InferenceEngine
from skyclf.services.training_orchestrator import CompletionListener, TrainingOrchestrator

logger = logging.getLogger(__name__)


def bind_reload_on_completion(
    orchestrator: TrainingOrchestrator,
    engine: InferenceEngine,
    models_dir: Optional[Union[str, Path]] = None,
) -> CompletionListener:
    """Register a listener that reloads ``engine`` after each successful run."""

    async def reload_models() -> None:
        logger.info("Reloading models after training completion")
        try:
            # Session construction is blocking; keep it off the event loop
            swapped = await asyncio.to_thread(engine.reload, models_dir, "")
        except SkyClfError as e:
            logger.error(f"Model reload after training failed: {e}")
            return

        if swapped:
            summary = engine.model_summary()
            logger.info(f"Now serving model {summary.get('active')}")

    orchestrator.on_complete(reload_models)
    return reload_models
