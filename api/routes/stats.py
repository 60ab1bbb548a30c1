"""
Ingestion statistics endpoint
"""
from datetime import date
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from api.dependencies import get_db, get_pipeline
from ingestion.bus import (
    INGEST_REQUESTS_TOPIC,
    INGEST_DEADLETTER_TOPIC,
    STRUCTURED_WRITER_GROUP,
    OPERATOR_TRIAGE_GROUP,
)
from ingestion.runtime import Pipeline
from schemas.api import StatsResponse, SourceStatistics, CycleSummary
from models.base import utcnow
from models.bus import BusDelivery, BusMessage
from models.entity import Entity
from models.fetch_log import FetchLogEntry
from models.ingestion_cycle import IngestionCycle
from models.metadata_record import MetadataRecord
from models.profile import Profile
from models.source import Source
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent cycles to return"),
    cycle_date: Optional[date] = Query(None, description="Fetch log date to summarize (default: latest cycle)"),
    db: AsyncSession = Depends(get_db),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Get ingestion statistics.

    Returns:
    - Entity, profile and record totals
    - Fetch log status counts for one cycle date
    - Per-source statistics
    - Recent scheduling cycles
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] GET /stats")

    # ========== Overall Summary ==========

    total_entities = (await db.execute(select(func.count()).select_from(Entity))).scalar() or 0
    total_profiles = (await db.execute(select(func.count()).select_from(Profile))).scalar() or 0
    active_profiles = (await db.execute(
        select(func.count()).select_from(Profile).where(Profile.is_active.is_(True))
    )).scalar() or 0
    total_records = (await db.execute(select(func.count()).select_from(MetadataRecord))).scalar() or 0

    # ========== Recent Cycles ==========

    recent_cycles = (await db.execute(
        select(IngestionCycle).order_by(IngestionCycle.started_at.desc()).limit(limit)
    )).scalars().all()

    if cycle_date is None and recent_cycles:
        cycle_date = recent_cycles[0].cycle_date

    # ========== Fetch Log Status Counts ==========

    fetch_status_counts = {}
    if cycle_date is not None:
        rows = (await db.execute(
            select(FetchLogEntry.status, func.count())
            .where(FetchLogEntry.cycle_date == cycle_date)
            .group_by(FetchLogEntry.status)
        )).all()
        fetch_status_counts = {status.value: count for status, count in rows}

    # ========== Per-Source Statistics ==========

    source_statistics = []
    sources = (await db.execute(select(Source).order_by(Source.id))).scalars().all()

    for source in sources:
        profile_count, active_count, last_checked = (await db.execute(
            select(
                func.count(Profile.id),
                func.count(Profile.id).filter(Profile.is_active.is_(True)),
                func.max(Profile.last_checked)
            ).where(Profile.source_id == source.id)
        )).one()

        record_count = (await db.execute(
            select(func.count()).select_from(MetadataRecord).where(MetadataRecord.source_id == source.id)
        )).scalar() or 0

        pending = (await db.execute(
            select(func.count())
            .select_from(BusDelivery)
            .join(BusMessage, BusDelivery.message_id == BusMessage.id)
            .where(
                BusMessage.topic == INGEST_REQUESTS_TOPIC,
                BusMessage.routing_key == source.name,
                BusDelivery.consumer_group == STRUCTURED_WRITER_GROUP,
                BusDelivery.acked_at.is_(None)
            )
        )).scalar() or 0

        source_statistics.append(SourceStatistics(
            source_name=source.name,
            total_profiles=profile_count or 0,
            active_profiles=active_count or 0,
            total_records=record_count,
            pending_work_items=pending,
            last_checked=last_checked
        ))

    pending_dead_letters = await pipeline.bus.count_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP)

    logger.info(
        f"[{request_id}] Stats: {total_records} records, "
        f"{total_profiles} profiles, {len(recent_cycles)} cycles"
    )

    return StatsResponse(
        timestamp=utcnow(),
        total_entities=total_entities,
        total_profiles=total_profiles,
        active_profiles=active_profiles,
        total_records=total_records,
        cycle_date=cycle_date,
        fetch_status_counts=fetch_status_counts,
        source_statistics=source_statistics,
        recent_cycles=[CycleSummary.model_validate(cycle) for cycle in recent_cycles],
        pending_dead_letters=pending_dead_letters
    )
