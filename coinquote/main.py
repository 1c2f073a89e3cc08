"""Main application entry point with app factory and lifespan management."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from coinquote.api.app import create_api_app
from coinquote.core.config import settings
from coinquote.core.logging import get_logger, setup_logging
from coinquote.services.resolver_service import ResolverService, build_service

logger = get_logger("main")


def create_app(service: ResolverService | None = None) -> FastAPI:
    """Create the main FastAPI application with the API mounted at /api.

    Args:
        service: Pre-built service (tests); built from settings when omitted
    """
    api_app = create_api_app()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging()
        logger.info(f"Starting {settings.app_name} v{settings.app_version}")
        logger.info(f"Environment: {settings.environment}")

        resolver_service = service or build_service(settings)
        await resolver_service.start()
        api_app.state.service = resolver_service

        yield

        logger.info("Shutting down...")
        api_app.state.service = None
        await resolver_service.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.mount("/api", api_app)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/api/docs" if settings.debug else None,
            "health": "/api/health",
        }

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "coinquote.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


# Application instance
app = create_app()


if __name__ == "__main__":
    run()
