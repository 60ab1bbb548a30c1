"""
Fetch log retrieval endpoint with pagination and filtering
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import FetchLogResponse, FetchLogEntryResponse, PaginationMetadata
from models.base import FetchStatus
from models.fetch_log import FetchLogEntry
from models.profile import Profile
from models.source import Source
from typing import Optional
from datetime import date
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Fetch Log"])


@router.get("/fetch-log", response_model=FetchLogResponse)
async def get_fetch_log(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=1000, description="Items per page"),
    cycle_date: Optional[date] = Query(None, description="Filter by cycle date"),
    status: Optional[FetchStatus] = Query(None, description="Filter by status"),
    profile_id: Optional[int] = Query(None, description="Filter by profile"),
    source_name: Optional[str] = Query(None, description="Filter by source name"),
    db: AsyncSession = Depends(get_db)
):
    """
    Retrieve fetch log entries, newest first.

    Partial and failed entries carry the last error verbatim in `message`;
    partial entries also report how many items were written.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(
        f"[{request_id}] GET /fetch-log - page={page}, page_size={page_size}, "
        f"filters: cycle_date={cycle_date}, status={status}, source_name={source_name}"
    )

    query = select(FetchLogEntry)
    filters = []
    filters_applied = {}

    if cycle_date:
        filters.append(FetchLogEntry.cycle_date == cycle_date)
        filters_applied["cycle_date"] = cycle_date.isoformat()

    if status:
        filters.append(FetchLogEntry.status == status)
        filters_applied["status"] = status.value

    if profile_id is not None:
        filters.append(FetchLogEntry.profile_id == profile_id)
        filters_applied["profile_id"] = profile_id

    if source_name:
        query = query.join(Profile, FetchLogEntry.profile_id == Profile.id).join(
            Source, Profile.source_id == Source.id
        )
        filters.append(Source.name == source_name)
        filters_applied["source_name"] = source_name

    if filters:
        query = query.where(and_(*filters))

    total_items = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar() or 0

    offset = (page - 1) * page_size
    entries = (await db.execute(
        query.order_by(FetchLogEntry.cycle_date.desc(), FetchLogEntry.id.desc())
        .offset(offset)
        .limit(page_size)
    )).scalars().all()

    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0

    return FetchLogResponse(
        items=[FetchLogEntryResponse.model_validate(entry) for entry in entries],
        pagination=PaginationMetadata(
            total_items=total_items,
            total_pages=total_pages,
            current_page=page,
            page_size=page_size,
            has_next=page < total_pages,
            has_previous=page > 1
        ),
        filters_applied=filters_applied
    )
