"""
Main FastAPI application for the TipFlow backend.
Wires webhooks, notification endpoints and background settlement together.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from tipflow.core.config import settings
from tipflow.core.database import DatabaseManager, close_database, init_database
from tipflow.core.logging import setup_logging
from tipflow.api.middleware import add_middleware
from tipflow.api.routes import ledger, notifications, webhooks
from tipflow.api.schemas.common import APIResponse, HealthCheckResponse
from tipflow.scheduler.settlement_scheduler import (
    get_settlement_scheduler, shutdown_settlement_scheduler, start_settlement_scheduler
)
from tipflow.services.event_processor import get_event_processor, shutdown_event_processor
from tipflow.services.notification_dispatcher import shutdown_notification_dispatcher


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting TipFlow API server", environment=settings.environment)

    await init_database()
    await get_event_processor()
    logger.info("Event processor started")

    try:
        await start_settlement_scheduler()
    except Exception as e:
        # Webhook ingestion keeps running without settlement
        logger.error("Failed to start settlement scheduler", error=str(e))

    yield

    logger.info("Shutting down TipFlow API server")
    try:
        await shutdown_settlement_scheduler()
        await shutdown_event_processor()
        await shutdown_notification_dispatcher()
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))
    finally:
        await close_database()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging()

    app = FastAPI(
        title="TipFlow API",
        description="Farcaster engagement rewards: webhook ingestion, ledger and batch settlement.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    add_middleware(app)

    @app.get("/health", response_model=HealthCheckResponse, tags=["System"])
    async def health_check():
        database_ok = await DatabaseManager.health_check()
        scheduler = get_settlement_scheduler()
        services = {
            "database": "healthy" if database_ok else "unhealthy",
            "settlement_scheduler": scheduler.status.value,
            "api": "healthy",
        }
        if not database_ok:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "version": settings.app_version, "services": services}
            )
        return HealthCheckResponse(version=settings.app_version, services=services)

    @app.get("/", response_model=APIResponse, tags=["System"])
    async def root():
        return APIResponse(message=f"TipFlow API v{settings.app_version}")

    app.include_router(webhooks.router, prefix="/webhook")
    app.include_router(notifications.router, prefix="/api")
    app.include_router(ledger.router, prefix="/api")

    logger.info("FastAPI application created successfully")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tipflow.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
