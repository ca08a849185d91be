"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from comborank.api.v1.router import api_router
from comborank.config import settings
from comborank.core.database import close_db, init_db
from comborank.core.logging import setup_logging
from comborank.core.redis import close_redis
from comborank.integrations.itunes_search import close_search_client, get_search_client
from comborank.services.rankings.resilience import get_resilience_coordinator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    setup_logging()

    logger.info(
        "Starting ComboRank",
        extra={
            "environment": settings.environment,
            "version": settings.app_version,
            "ranking_cache_backend": settings.ranking_cache_backend,
        },
    )

    if settings.environment == "development" and settings.ranking_cache_backend == "database":
        await init_db()
        logger.info("Development database initialized")

    get_search_client()

    yield

    logger.info("Shutting down ComboRank")
    await close_search_client()
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Keyword combo ranking service: metadata combo generation, strength "
            "classification, prioritization and resilient live ranking lookups"
        ),
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API router
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get(
        "/health",
        summary="Health check",
        description="Return service health status, version and circuit breaker state.",
    )
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "breaker_state": get_resilience_coordinator().breaker.state.value,
        }

    return app


app = create_app()
