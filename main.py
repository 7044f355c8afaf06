"""
Payroll Recon - FastAPI Application Entry Point

This is the main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from payroll_recon.config import settings
from payroll_recon.database import init_db, close_db
from payroll_recon.utils.error_handling import setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")

    await init_db()
    logger.info("Database tables initialized")

    if settings.hellosign_missing_keys:
        logger.warning(
            f"E-signature dispatch disabled until configured: {', '.join(settings.hellosign_missing_keys)}"
        )

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Payroll computation, reconciliation and receipt dispatch",
    version="0.1.0",
    docs_url="/api/docs" if settings.is_development else None,
    redoc_url="/api/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_exception_handlers(app)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "environment": settings.app_env,
    }


# ===========================================
# INCLUDE ROUTERS
# ===========================================

from payroll_recon.routers import (  # noqa: E402
    payroll,
    payroll_mappings,
    payroll_settings,
    esignature_webhook,
)

app.include_router(payroll.router, prefix="/api/payroll", tags=["Payroll"])
app.include_router(payroll_mappings.router, prefix="/api/payroll", tags=["Payroll Identity Mappings"])
app.include_router(payroll_settings.router, prefix="/api/payroll", tags=["Payroll Master Data"])
app.include_router(esignature_webhook.router, prefix="/api/payroll", tags=["E-Signature Webhooks"])
