"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from yorubaocr.api.routes import router
from yorubaocr.config import Settings, get_settings
from yorubaocr.ml.inference import InferencePool
from yorubaocr.ml.model_manager import ModelState, OnnxModelHandle
from yorubaocr.ml.preprocessing import ImagePreprocessor
from yorubaocr.orchestrator import PredictionOrchestrator

logger = logging.getLogger(__name__)


def _log_model_state(state: ModelState) -> None:
    logger.info("Model state -> %s", state)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Wire the pool, model handle and orchestrator onto ``app.state``."""
    pool = InferencePool(settings)
    model = OnnxModelHandle(settings, pool)
    model.subscribe(_log_model_state)
    app.state.settings = settings
    app.state.inference_pool = pool
    app.state.model = model
    app.state.orchestrator = PredictionOrchestrator(
        model,
        ImagePreprocessor(settings),
        pool,
        debug=settings.debug,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Yoruba OCR (device=%s, max_concurrent=%s, model=%s, path=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
        settings.model_path,
    )

    init_state(app, settings)
    state = await app.state.model.load()
    logger.info("Yoruba OCR ready (model %s)", state)
    yield

    logger.info("Shutting down Yoruba OCR")
    app.state.model.unload()
    app.state.inference_pool.shutdown()
    logger.info("Yoruba OCR shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Yoruba OCR",
        description="Image-to-tensor preprocessing and on-device OCR prediction for Yoruba text",
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
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
