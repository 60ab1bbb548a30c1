"""
Health check endpoint with database, queue depth and last cycle status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db, get_pipeline
from core.exceptions import InfrastructureError
from ingestion.bus import (
    INGEST_REQUESTS_TOPIC,
    INGEST_DEADLETTER_TOPIC,
    STRUCTURED_WRITER_GROUP,
    OPERATOR_TRIAGE_GROUP,
)
from ingestion.runtime import Pipeline
from models.base import utcnow
from models.ingestion_cycle import IngestionCycle
from schemas.api import HealthCheckResponse, CycleSummary
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Unacknowledged work items and dead letters
    - The most recent scheduling cycle
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    pending_work_items = 0
    pending_dead_letters = 0
    last_cycle = None

    if db_connected:
        try:
            pending_work_items = await pipeline.bus.count_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP)
            pending_dead_letters = await pipeline.bus.count_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP)
        except InfrastructureError as e:
            logger.error(f"Failed to read queue depth: {str(e)}")

        cycle = (await db.execute(
            select(IngestionCycle).order_by(IngestionCycle.started_at.desc()).limit(1)
        )).scalar_one_or_none()
        if cycle is not None:
            last_cycle = CycleSummary.model_validate(cycle)

    return HealthCheckResponse(
        timestamp=utcnow(),
        database_connected=db_connected,
        pending_work_items=pending_work_items,
        pending_dead_letters=pending_dead_letters,
        last_cycle=last_cycle
    )
