"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from faceguard.api.routes import register_exception_handlers, router
from faceguard.config import get_settings
from faceguard.service import FaceIdService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: the init/teardown contract of the face ID core.

    Startup restores the persisted self-enrollment and starts the embedding
    model load without waiting for it; the seeded identities are added in the
    background once the load settles, so the API serves `mode=loading` until
    then. Shutdown stops the active flow and the camera, then closes the store
    and the inference pool.
    """
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FaceGuard (device=%s, detection=%s, recognition=%s, threshold=%.2f, authorized_only=%s)",
        settings.device,
        settings.face_detection_model,
        settings.face_recognition_model,
        settings.confidence_threshold,
        settings.authorized_only,
    )

    service = FaceIdService.from_settings(settings)
    app.state.service = service
    await service.start()

    logger.info("FaceGuard accepting requests (mode=%s)", service.embedder.mode)
    yield

    logger.info("Shutting down FaceGuard")
    service.shutdown()
    logger.info("FaceGuard shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FaceGuard",
        description="Face enrollment and authentication with camera lifecycle management",
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
    register_exception_handlers(application)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    settings = get_settings()
    uvicorn.run("faceguard.main:app", host=settings.host, port=settings.port)
