"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from snaplabel.config import Settings
    from snaplabel.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snaplabel.api.routes import router
from snaplabel.config import get_settings
from snaplabel.ml.errors import ModelLoadError
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings, manager: ModelManager | None = None) -> None:
    """Build the process-wide resources and attach them to the app.

    The model and label table are loaded once here. A load failure is logged
    and leaves classification disabled; the rest of the API keeps serving.
    ``manager`` defaults to an ONNX Runtime manager built from ``settings``.
    """
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    if manager is None:
        manager = OnnxModelManager(settings)
    app.state.model_manager = manager

    try:
        app.state.loaded_model = manager.load(settings.classification_model)
    except ModelLoadError:
        logger.exception("Classification disabled: cannot load %s", settings.classification_model)
        app.state.loaded_model = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapLabel (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
    )

    init_state(app, settings)

    logger.info("SnapLabel ready")
    yield

    logger.info("Shutting down SnapLabel")
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("SnapLabel shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Classify a photo with a pre-trained image classification model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("snaplabel.main:app", host=settings.host, port=settings.port)
