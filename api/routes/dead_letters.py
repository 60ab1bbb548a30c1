"""
Dead-letter triage endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from api.dependencies import get_pipeline
from ingestion.bus import Delivery, INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP
from ingestion.runtime import Pipeline
from schemas.api import DeadLetterListResponse, DeadLetterResponse, ErrorResponse, ReplayResponse
from schemas.work_item import DeadLetterMessage
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dead-letters", tags=["Dead Letters"])


def _to_response(delivery: Delivery) -> DeadLetterResponse:
    dead_letter = DeadLetterMessage.from_payload(delivery.payload)
    return DeadLetterResponse(
        delivery_id=delivery.delivery_id,
        message_id=delivery.message_id,
        published_at=delivery.published_at,
        delivery_count=delivery.delivery_count,
        work_item=dead_letter.work_item,
        error_kind=dead_letter.error_kind,
        error_type=dead_letter.error_type,
        message=dead_letter.message,
        retry_count=dead_letter.retry_count,
        context=dead_letter.context,
        failed_at=dead_letter.failed_at
    )


@router.get("", response_model=DeadLetterListResponse)
async def list_dead_letters(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """Dead-lettered work items awaiting operator triage, oldest first"""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] GET /dead-letters - limit={limit}, offset={offset}")

    deliveries = await pipeline.bus.list_pending(
        INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP, limit=limit, offset=offset
    )
    total = await pipeline.bus.count_pending(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP)

    return DeadLetterListResponse(
        items=[_to_response(delivery) for delivery in deliveries],
        total=total,
        limit=limit,
        offset=offset
    )


@router.get("/{delivery_id}", response_model=DeadLetterResponse, responses={404: {"model": ErrorResponse}})
async def get_dead_letter(delivery_id: int, pipeline: Pipeline = Depends(get_pipeline)):
    delivery = await pipeline.bus.get_delivery(delivery_id)
    if delivery is None or delivery.consumer_group != OPERATOR_TRIAGE_GROUP:
        raise HTTPException(status_code=404, detail=f"Dead letter {delivery_id} not found")
    return _to_response(delivery)


@router.post("/{delivery_id}/replay", response_model=ReplayResponse, responses={404: {"model": ErrorResponse}})
async def replay_dead_letter(
    request: Request,
    delivery_id: int,
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Re-publish a dead-lettered work item to ingest-requests.

    The triage delivery is acknowledged, so a dead letter is replayed at most once.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    delivery = await pipeline.bus.get_delivery(delivery_id)
    if delivery is None or delivery.consumer_group != OPERATOR_TRIAGE_GROUP:
        raise HTTPException(status_code=404, detail=f"Dead letter {delivery_id} not found")

    message_id = await pipeline.retry_manager.replay_dead_letter(delivery_id)
    if message_id is None:
        raise HTTPException(status_code=404, detail=f"Dead letter {delivery_id} not found")

    work_item = DeadLetterMessage.from_payload(delivery.payload).work_item
    logger.info(f"[{request_id}] Replayed dead letter {delivery_id} as message {message_id}")

    return ReplayResponse(
        delivery_id=delivery_id,
        message_id=message_id,
        profile_id=work_item.profile_id,
        source_name=work_item.source_name
    )
