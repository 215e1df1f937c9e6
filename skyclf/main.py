import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from skyclf.api import api_router
from skyclf.config import Settings, settings as default_settings
from skyclf.exceptions import RemoteFailure, SkyClfError
from skyclf.services.completion import bind_reload_on_completion
from skyclf.services.inference_engine import InferenceEngine
from skyclf.services.training_orchestrator import TrainingOrchestrator

logger = logging.getLogger(__name__)


def _build_engine(cfg: Settings) -> InferenceEngine:
    return InferenceEngine(
        cfg.models_dir,
        task=cfg.model_task,
        version_prefix=cfg.version_prefix,
        artifact_name=cfg.artifact_name,
    )


def _build_orchestrator(cfg: Settings) -> TrainingOrchestrator:
    return TrainingOrchestrator.from_env(
        cfg.trainer_container,
        cfg.docker_timeout,
        stop_grace_seconds=cfg.stop_grace_seconds,
        status_log_tail=cfg.status_log_tail,
        final_log_tail=cfg.final_log_tail,
    )


def create_application(
    settings: Optional[Settings] = None,
    engine: Optional[InferenceEngine] = None,
    orchestrator: Optional[TrainingOrchestrator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The engine and orchestrator are built in the lifespan unless passed in;
    either way they are owned by the app and closed on shutdown.
    """
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Handle application startup and shutdown events"""
        logger.info(f"🚀 Starting {cfg.app_name} (models={cfg.models_dir})")

        app.state.engine = engine or _build_engine(cfg)
        try:
            await asyncio.to_thread(app.state.engine.reload)
        except SkyClfError as e:
            logger.error(f"Initial model load failed, serving without a model: {e}")
        if not app.state.engine.loaded:
            logger.info("No model loaded yet")

        app.state.orchestrator = orchestrator
        if app.state.orchestrator is None and cfg.trainer_enabled:
            try:
                app.state.orchestrator = await asyncio.to_thread(_build_orchestrator, cfg)
            except RemoteFailure as e:
                logger.warning(f"Trainer init warning (training disabled): {e}")

        if app.state.orchestrator is not None:
            bind_reload_on_completion(app.state.orchestrator, app.state.engine, cfg.models_dir)
            logger.info(f"Trainer ready: container={app.state.orchestrator.container_name}")

        yield

        logger.info(f"🛑 Shutting down {cfg.app_name}")
        if app.state.orchestrator is not None:
            try:
                await app.state.orchestrator.close()
            except Exception as e:
                logger.warning(f"Failed to close trainer client: {e}")
        app.state.engine.close()

    app = FastAPI(
        title=cfg.app_name,
        description=cfg.app_description,
        version=cfg.app_version,
        debug=cfg.debug,
        lifespan=lifespan,
    )
    app.state.settings = cfg

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    # Include API routes
    app.include_router(api_router)

    return app


# Create the FastAPI application
app = create_application()
