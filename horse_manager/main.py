"""
My Horse Manager - entitlement service

Local FastAPI application exposing subscription state and free-tier limits
to the app screens.
"""
from fastapi import FastAPI
import structlog
import logging

from horse_manager.config import settings
from horse_manager.subscription.routes import router as subscription_router


# Configure structured logging
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level.upper())
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Subscription gating and entitlement reconciliation",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None
)


# Include routers
app.include_router(subscription_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "status": "operational",
        "environment": settings.environment
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    from horse_manager.subscription.manager import get_subscription_manager

    manager = get_subscription_manager()
    return {
        "status": "healthy",
        "purchase_service": manager.phase.value
    }


@app.on_event("startup")
async def startup_event():
    """Run on application startup."""
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.debug,
        platform=settings.platform
    )

    from horse_manager.subscription.manager import get_subscription_manager

    await get_subscription_manager().resume()


@app.on_event("shutdown")
async def shutdown_event():
    """Run on application shutdown."""
    logger.info("application_shutting_down")

    from horse_manager.subscription.manager import get_subscription_manager

    await get_subscription_manager().close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "horse_manager.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level
    )
