"""
Funnelcast — conversion-event reconciliation service.
Main application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnelcast.api.events import router as events_router
from funnelcast.api.ops import router as ops_router
from funnelcast.api.webhooks import router as webhooks_router
from funnelcast.config import get_settings
from funnelcast.core.pipeline import build_pipeline
from funnelcast.core.sweeper import MaintenanceSweeper
from funnelcast.middleware.security import SecurityHeadersMiddleware
from funnelcast.models.database import dispose_engine, get_session_maker

import structlog

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("funnelcast_starting", pixel_configured=bool(settings.pixel_id and settings.access_token))

    if getattr(app.state, "pipeline", None) is None:
        app.state.pipeline = build_pipeline(settings, get_session_maker())
    sweeper = MaintenanceSweeper(
        app.state.pipeline,
        interval_seconds=settings.sweep_interval_seconds,
        counters_retention_days=settings.counters_retention_days,
    )
    sweeper.start()
    try:
        yield
    finally:
        logger.info("funnelcast_shutting_down")
        await sweeper.stop()
        await app.state.pipeline.drain(timeout=settings.delivery_max_elapsed_seconds)
        await dispose_engine()


app = FastAPI(
    title="Funnelcast",
    description="Conversion-event reconciliation: one identity, one event id, one delivery.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if get_settings().debug else None,
    redoc_url="/redoc" if get_settings().debug else None,
    openapi_url="/openapi.json" if get_settings().debug else None,
)

# Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# Browser pixel calls come from the funnel's landing pages.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["POST"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# --- Routes ---
app.include_router(events_router)
app.include_router(webhooks_router)
app.include_router(ops_router)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "funnelcast", "version": VERSION}
