"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from settlement.core.config import settings
from settlement.core.logging import setup_logging
from settlement.core.otel import (
    initialize_otel,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_otel_logging,
    shutdown_otel,
)
from settlement.db.session import close_db, engine, init_db
from settlement.models import Base  # Import all models to register with Base.metadata

from settlement.api import monitoring, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    instrument_sqlalchemy(engine)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")
    logger.info(f"Accepting Stripe events with livemode={settings.STRIPE_LIVE_MODE} ({settings.ENVIRONMENT})")

    yield

    # Shutdown
    logger.info("Shutting down...")
    shutdown_otel()
    close_db()


# Create FastAPI app
app = FastAPI(
    title="Settlement Backend",
    description="Stripe webhook settlement for orders, Special Cheers and memberships",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
instrument_fastapi(app)

# Include routers
app.include_router(webhooks.router)
app.include_router(monitoring.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
