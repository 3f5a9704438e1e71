"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from research_core.api.rate_limit import limiter
from research_core.api.routes import jobs, resilience
from research_core.config.settings import Settings, get_settings
from research_core.observability.logger import get_logger, setup_logging
from research_core.runtime import Runtime

logger = get_logger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API app. The Runtime is created on startup and closed on shutdown."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        # Startup
        setup_logging(level=settings.log_level, json_format=settings.log_json)
        logger.info(f"Starting {settings.app_name}...")
        settings.log_config_summary()

        runtime = Runtime.from_settings(settings)
        app.state.runtime = runtime
        runtime.jobs.start_monitoring()

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.app_name}...")
        await runtime.close()
        app.state.runtime = None

    app = FastAPI(
        title=settings.app_name,
        description="Resilience and job-processing core for AI research workloads",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Rate Limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Routers
    app.include_router(resilience.router, prefix="/api")
    app.include_router(jobs.router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
