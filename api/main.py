"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from api.routes import health, fetch_log, dead_letters, stats
from core.config import settings
from core.database import async_session_maker
from core.logging import setup_logging
from ingestion.runtime import build_pipeline
from ingestion.scheduler import IngestionScheduler
import logging
from api.middleware import RequestContextMiddleware

setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline and start the daily scheduler"""
    logger.info("Starting restaurant metadata ingestion API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    pipeline = build_pipeline(async_session_maker)
    app.state.pipeline = pipeline

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        await pipeline.bus.ensure_subscriptions()
        scheduler = IngestionScheduler(pipeline.scheduler)
        scheduler.start()

    yield

    logger.info("Shutting down restaurant metadata ingestion API")
    if scheduler is not None:
        scheduler.stop()


# Create FastAPI app
app = FastAPI(
    title="Restaurant Metadata Ingestion API",
    description="Operator API for the ingestion pipeline: fetch log, dead letters and statistics",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(fetch_log.router)
app.include_router(dead_letters.router)
app.include_router(stats.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Restaurant Metadata Ingestion API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "fetch_log": "/fetch-log",
            "dead_letters": "/dead-letters",
            "stats": "/stats"
        }
    }
