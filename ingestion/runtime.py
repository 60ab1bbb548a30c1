"""
Wiring of the pipeline components from settings.

Scripts and the API build everything through here so that all of them
share one bus, one watermark store and the same subscriptions.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import Settings, settings as default_settings
from ingestion.archive import LocalRawArchive
from ingestion.bus import MessageBus
from ingestion.consumer import IngestionConsumer
from ingestion.rate_limit import RateLimiterRegistry
from ingestion.retry import RetryManager, RetryPolicy
from ingestion.scheduler import CycleScheduler
from ingestion.sources import build_adapters
from ingestion.structured_sink import StructuredSink
from ingestion.watermark import WatermarkStore
from ingestion.workers import WorkerPool
from models.source import Source
import logging

logger = logging.getLogger(__name__)


async def load_sources(session_factory: async_sessionmaker) -> List[Source]:
    """Source reference rows, read once at startup"""
    async with session_factory() as session:
        return list((await session.execute(select(Source).order_by(Source.id))).scalars())


@dataclass
class Pipeline:
    bus: MessageBus
    watermark: WatermarkStore
    retry_manager: RetryManager
    scheduler: CycleScheduler


def build_pipeline(session_factory: async_sessionmaker, settings: Settings = default_settings) -> Pipeline:
    """Components needed to schedule cycles and triage dead letters"""
    bus = MessageBus(session_factory, visibility_timeout=settings.VISIBILITY_TIMEOUT_SECONDS)
    watermark = WatermarkStore(session_factory)
    retry_manager = RetryManager(
        bus,
        watermark,
        RetryPolicy(settings.MAX_RETRIES, settings.BACKOFF_BASE_SECONDS, settings.BACKOFF_MAX_SECONDS)
    )
    scheduler = CycleScheduler(
        session_factory,
        bus,
        watermark,
        refresh_interval=timedelta(hours=settings.REFRESH_INTERVAL_HOURS),
        refresh_grace=timedelta(minutes=settings.REFRESH_GRACE_MINUTES),
        page_size=settings.SCHEDULER_PAGE_SIZE,
        deadline=timedelta(minutes=settings.CYCLE_DEADLINE_MINUTES)
    )
    return Pipeline(bus, watermark, retry_manager, scheduler)


async def build_worker_pool(
    session_factory: async_sessionmaker,
    client: httpx.AsyncClient,
    source_names: Optional[List[str]] = None,
    settings: Settings = default_settings
) -> WorkerPool:
    """
    Build the consumer and a worker pool over the configured sources.

    Args:
        source_names: Restrict the pool to these sources (default: all rows)
    """
    pipeline = build_pipeline(session_factory, settings)
    await pipeline.bus.ensure_subscriptions()

    sources = await load_sources(session_factory)
    if source_names:
        sources = [source for source in sources if source.name in source_names]
    adapters = build_adapters(sources, client, settings)

    consumer = IngestionConsumer(
        bus=pipeline.bus,
        watermark=pipeline.watermark,
        structured_sink=StructuredSink(session_factory),
        archive=LocalRawArchive(settings.RAW_ARCHIVE_ROOT),
        adapters=adapters,
        rate_limiters=RateLimiterRegistry(settings.PER_SOURCE_RATE_LIMIT, settings.DEFAULT_SOURCE_RATE_LIMIT),
        retry_manager=pipeline.retry_manager,
        fetch_timeout=settings.FETCH_TIMEOUT_SECONDS,
        sink_timeout=settings.SINK_TIMEOUT_SECONDS,
        lookback=timedelta(days=settings.FETCH_LOOKBACK_DAYS)
    )

    concurrency: Dict[str, int] = {source.name: settings.concurrency_for(source.name) for source in sources}
    return WorkerPool(
        pipeline.bus,
        consumer,
        [source.name for source in sources],
        concurrency=concurrency,
        poll_interval=settings.WORKER_POLL_INTERVAL_SECONDS
    )
