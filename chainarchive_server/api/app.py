"""
FastAPI application factory for the Chain Archive HTTP API.

This module creates the FastAPI app with:
- CORS configuration for dashboards
- Archive services attached to app.state
- Archive API routes under /api
- Health endpoint reporting subscriber connectivity
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .._version import __version__
from ..archive import ArchivePipeline, ArchiveStore, BackfillTrigger, EventSubscriber
from .config import Settings
from .routes import router

logger = logging.getLogger(__name__)


@dataclass
class ArchiveServices:
    """Components the HTTP routes depend on.

    Attributes:
        store: Archive store (read side)
        pipeline: Archive pipeline (stats only)
        backfill: Manual archival trigger
        subscriber: Live subscriber, None when disabled
    """

    store: ArchiveStore
    pipeline: ArchivePipeline
    backfill: BackfillTrigger
    subscriber: EventSubscriber | None = None


def create_app(services: ArchiveServices, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Wired archive components
        settings: Optional API settings (loaded from env if not provided)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(
            "Archive API ready",
            extra={"bind_address": settings.bind_address},
        )
        yield
        logger.info("Archive API shutting down")

    app = FastAPI(
        title="Chain Archive",
        description=(
            "Read API over completed supply chain journeys archived from the ledger, "
            "plus manual backfill for products whose completion event was missed."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api")

    @app.get("/health")
    async def health():
        subscriber = services.subscriber
        return {
            "status": "healthy",
            "service": "chainarchive",
            "subscriber": subscriber.stats if subscriber else {"state": "disabled"},
            "pipeline": services.pipeline.stats,
        }

    return app
