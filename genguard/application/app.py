#!/usr/bin/env python3
"""
FastAPI Application

Status and operator API for the generation queue.

Lifespan:
    - Without injected services, builds them from settings and the generator
      named by ``GENGUARD_GENERATOR``, and starts the background loops
    - The worker loop runs in-process only when jobs live in process memory
      (Redis disabled); with Redis a separate ``python -m genguard worker``
      process executes jobs
    - Injected services (tests, embedding) are left to their owner
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from genguard.application.api.middleware.error_handler import register_error_handling
from genguard.application.api.routes.admin import router as admin_router
from genguard.application.api.routes.health import router as health_router
from genguard.application.api.routes.jobs import router as jobs_router
from genguard.bootstrap import GenerationServices, create_services, load_generator
from genguard.core.config.settings import get_settings
from genguard.core.logging.logger import get_logger, setup_logging
from genguard.infrastructure.monitoring.metrics_collector import get_metrics_collector

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    if getattr(app.state, "services", None) is not None:
        yield
        return

    logger.info(
        "Starting generation API",
        environment=settings.app.ENVIRONMENT,
        version=settings.app.APP_VERSION,
    )
    generate = load_generator(settings.app.GENGUARD_GENERATOR or "")
    services = await create_services(generate, settings)
    await services.start(run_worker=not settings.redis.REDIS_ENABLED)
    app.state.services = services
    logger.info("Application startup complete")

    try:
        yield
    finally:
        logger.info("Shutting down application")
        await services.stop()
        app.state.services = None
        logger.info("Application shutdown complete")


def create_app(services: GenerationServices | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built services; the lifespan then neither builds nor stops them
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app.APP_NAME,
        version=settings.app.APP_VERSION,
        description="Resilient image-generation job queue",
        lifespan=lifespan,
    )
    app.state.services = services

    register_error_handling(app, include_traceback=(settings.app.ENVIRONMENT == "development"))

    base_path = settings.app.API_BASE_PATH
    app.include_router(health_router, prefix=base_path)
    app.include_router(jobs_router, prefix=base_path)
    app.include_router(admin_router, prefix=base_path)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": settings.app.APP_NAME,
            "version": settings.app.APP_VERSION,
            "environment": settings.app.ENVIRONMENT,
            "docs": "/docs",
            "health": f"{base_path}/health",
        }

    @app.get("/metrics", tags=["Monitoring"])
    async def prometheus_metrics():
        metrics = get_metrics_collector()
        return Response(content=metrics.get_prometheus_metrics(), media_type=metrics.get_content_type())

    return app
