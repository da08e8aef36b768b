"""
Pixel tracking backend
Main FastAPI Application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from urllib.parse import urlparse

from sqlalchemy import text

from pixeltrack.core.config import settings
from pixeltrack.core.database import SessionLocal
from pixeltrack.api.track import router as track_router
from pixeltrack.api.pixel_config import router as pixel_config_router
from pixeltrack.api.webhooks import router as webhooks_router

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting pixel tracking API...")
    try:
        db_host = urlparse(getattr(settings, "DATABASE_URL", "")).hostname
        logger.info("Config: db_host=%s env=%s", db_host, settings.ENVIRONMENT)
    except Exception:
        logger.info("Config: env=%s", settings.ENVIRONMENT)
    logger.info(
        "Enrichment config: geo=%s geo_timeout=%.1fs meta_forwarding=%s graph_version=%s",
        settings.GEO_LOOKUP_ENABLED,
        settings.GEO_LOOKUP_TIMEOUT_SECONDS,
        settings.META_FORWARDING_ENABLED,
        settings.META_GRAPH_API_VERSION,
    )
    yield
    logger.info("Shutting down pixel tracking API...")


app = FastAPI(
    title="Pixel Tracking API",
    description="Storefront event ingestion with server-side enrichment and Meta CAPI forwarding",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(track_router, tags=["tracking"])
app.include_router(track_router, prefix="/api", tags=["tracking"])
app.include_router(pixel_config_router, prefix="/api", tags=["pixel-config"])
app.include_router(webhooks_router, tags=["webhooks"])


@app.get("/health")
async def health_check():
    """Liveness check (should be fast and not depend on external services)."""
    return {
        "status": "ok",
        "service": "pixeltrack-backend",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/ready")
def readiness_check():
    """Readiness check (verifies the database is reachable)."""
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        return {"status": "ready", "db": "ok"}
    except Exception as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Pixel Tracking API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
