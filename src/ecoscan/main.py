"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from ecoscan.capture.camera import CameraBackend
    from ecoscan.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ecoscan.api.errors import ecoscan_error_handler
from ecoscan.api.routes import router
from ecoscan.capture.session import CaptureSessionManager
from ecoscan.config import get_settings
from ecoscan.errors import EcoScanError
from ecoscan.events import EventBus
from ecoscan.image_source import ImageSource
from ecoscan.ml.image_classifier import WasteClassifier
from ecoscan.ml.inference import InferencePool
from ecoscan.ml.model_loader import ModelHandle, ModelLoader
from ecoscan.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


def init_app_state(
    app: FastAPI,
    settings: Settings,
    *,
    camera_backend: CameraBackend | None = None,
    runtime_probe: Callable[[], bool] | None = None,
) -> ModelLoader:
    """Build the pipeline components and attach them to ``app.state``.

    The model handle is created here and handed to the loader and the
    pipeline; nothing else looks it up.
    """
    events = EventBus(history=settings.event_history)
    model = ModelHandle()
    loader = ModelLoader(settings, model, events=events, runtime_probe=runtime_probe)
    capture = CaptureSessionManager(settings, backend=camera_backend)
    inference_pool = InferencePool()
    pipeline = ClassificationPipeline(
        model=model,
        image_source=ImageSource(settings, capture),
        capture=capture,
        classifier=WasteClassifier(input_size=settings.input_size),
        pool=inference_pool,
        events=events,
    )

    app.state.settings = settings
    app.state.events = events
    app.state.model_loader = loader
    app.state.capture = capture
    app.state.inference_pool = inference_pool
    app.state.pipeline = pipeline
    return loader


async def _load_model(loader: ModelLoader) -> None:
    try:
        await loader.load()
    except EcoScanError as exc:
        # Already logged and published; the service keeps running with a failed model.
        logger.warning("Continuing without a model: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting EcoScan (device=%s, model=%s, cameras=%s)",
        settings.device,
        settings.model_path,
        settings.camera_fallback_indices,
    )

    loader = init_app_state(app, settings)
    load_task = asyncio.create_task(_load_model(loader))

    logger.info("EcoScan accepting requests (model loading in background)")
    yield

    logger.info("Shutting down EcoScan")
    load_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await load_task
    await loader.aclose()
    pipeline: ClassificationPipeline = app.state.pipeline
    await pipeline.shutdown()
    app.state.inference_pool.shutdown()
    logger.info("EcoScan shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="EcoScan",
        description="Waste image classification with a local ONNX model",
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

    application.add_exception_handler(EcoScanError, ecoscan_error_handler)  # type: ignore[arg-type]
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using ECOSCAN_HOST / ECOSCAN_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
