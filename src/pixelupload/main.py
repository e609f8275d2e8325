"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pixelupload.api.routes import router
from pixelupload.api.sessions import SessionRegistry
from pixelupload.config import get_settings
from pixelupload.pipeline.storage import SupabaseStorage
from pixelupload.pipeline.workers import WorkerPool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: wire storage, workers and sessions; tear them down on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting pixelupload (bucket=%s, max_size_mb=%s, max=%sx%s, quality=%s, workers=%s)",
        settings.storage_bucket,
        settings.max_size_mb,
        settings.max_width,
        settings.max_height,
        settings.compression_quality,
        settings.max_concurrent_transforms,
    )

    http_client = httpx.AsyncClient(timeout=settings.storage_timeout)
    try:
        storage = SupabaseStorage.from_settings(settings, http_client)
    except ValueError:
        await http_client.aclose()
        raise
    worker_pool = WorkerPool(settings.max_concurrent_transforms)
    app.state.storage = storage
    app.state.worker_pool = worker_pool
    app.state.sessions = SessionRegistry(settings, storage, worker_pool)

    logger.info("pixelupload ready")
    yield

    logger.info("Shutting down pixelupload")
    await app.state.sessions.close_all()
    await http_client.aclose()
    worker_pool.shutdown()
    logger.info("pixelupload shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="pixelupload",
        description="Image upload pipeline: validate, compress, crop and store user images",
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
