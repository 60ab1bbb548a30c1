"""
Ingestion consumer: turns one work item into stored records.

Steps, each independently failable:
1. Resolve the profile and its source adapter
2. Fetch from the source (rate-limited, with a per-call timeout)
3. For each item: validate, archive the raw payload, then upsert the record
4. Settle the fetch log and last_checked, then acknowledge the delivery

Outcomes:
- all items written: SUCCESS, last_checked advanced, acked
- some items written before a failure: PARTIAL, last_checked advanced, acked
- nothing written: the retry manager decides (backoff redelivery or dead letter)

Per-item errors never escape process(); InfrastructureError always does,
since the bus or watermark store being down must halt the worker.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from core.config import settings
from core.exceptions import (
    ArchiveWriteError,
    ConfigurationError,
    InfrastructureError,
    TransientSourceError,
    UpsertError,
)
from ingestion.archive import RawArchiveSink, archive_path, encode_payload
from ingestion.bus import Delivery, MessageBus
from ingestion.normalizer import MetadataNormalizer
from ingestion.rate_limit import RateLimiterRegistry
from ingestion.retry import Disposition, RetryManager
from ingestion.sources.base import SourceAdapter
from ingestion.structured_sink import StructuredSink
from ingestion.watermark import WatermarkStore
from models.base import FetchStatus, utcnow
from models.profile import Profile
from schemas.normalized import RawItem
from schemas.work_item import WorkItem

logger = logging.getLogger(__name__)


class ProcessingStatus(str, enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    SKIPPED = "skipped"


@dataclass
class Outcome:
    """Result of processing one work item"""
    status: ProcessingStatus
    items_fetched: int = 0
    items_written: int = 0
    retry_count: int = 0
    message: Optional[str] = None
    delay_seconds: Optional[float] = None


class IngestionConsumer:
    """Processes work items pulled from the ingest-requests topic"""

    def __init__(
        self,
        bus: MessageBus,
        watermark: WatermarkStore,
        structured_sink: StructuredSink,
        archive: RawArchiveSink,
        adapters: Dict[str, SourceAdapter],
        rate_limiters: RateLimiterRegistry,
        retry_manager: RetryManager,
        fetch_timeout: Optional[float] = None,
        sink_timeout: Optional[float] = None,
        lookback: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.bus = bus
        self.watermark = watermark
        self.structured_sink = structured_sink
        self.archive = archive
        self.adapters = adapters
        self.rate_limiters = rate_limiters
        self.retry_manager = retry_manager
        self.fetch_timeout = fetch_timeout if fetch_timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self.sink_timeout = sink_timeout if sink_timeout is not None else settings.SINK_TIMEOUT_SECONDS
        self.lookback = lookback if lookback is not None else timedelta(days=settings.FETCH_LOOKBACK_DAYS)
        self.clock = clock
        self._normalizers: Dict[str, MetadataNormalizer] = {}

    async def handle(self, delivery: Delivery) -> Outcome:
        """Decode a delivery and process it; undecodable payloads are dropped"""
        try:
            work_item = WorkItem.from_payload(delivery.payload)
        except ValidationError as e:
            logger.error(
                f"Dropping delivery {delivery.delivery_id}: payload is not a work item",
                extra={"error_context": {"payload": delivery.payload, "errors": e.error_count()}}
            )
            await self.bus.ack(delivery)
            return Outcome(ProcessingStatus.SKIPPED, message="invalid work item payload")

        return await self.process(work_item, delivery)

    async def process(self, work_item: WorkItem, delivery: Optional[Delivery] = None) -> Outcome:
        """
        Run one attempt for a work item.

        Args:
            work_item: What to fetch
            delivery: The bus delivery carrying it; acked or released here

        Returns:
            Outcome describing how the attempt was settled
        """
        label = f"profile {work_item.profile_id} ({work_item.source_name})"

        # 1. Resolve
        profile = await self.watermark.get_profile(work_item.profile_id)
        if profile is None:
            logger.warning(f"Skipping work item for {label}: profile no longer exists")
            await self._ack(delivery)
            return Outcome(ProcessingStatus.SKIPPED, message="profile not found")

        entry, _ = await self.watermark.ensure_pending(work_item.profile_id, work_item.cycle_date)
        if entry.status is FetchStatus.PENDING:
            retry_count = entry.retry_count
        else:
            # Redelivered or replayed after the day's entry settled
            retry_count = max(delivery.delivery_count - 1, 0) if delivery else 0

        if not profile.is_active:
            message = "Profile is inactive; work item discarded"
            await self.watermark.finalize(
                work_item.profile_id, work_item.cycle_date, FetchStatus.FAILED, retry_count, message
            )
            await self._ack(delivery)
            logger.info(f"Skipping work item for {label}: profile is inactive")
            return Outcome(ProcessingStatus.SKIPPED, retry_count=retry_count, message=message)

        adapter = self.adapters.get(work_item.source_name)
        if adapter is None:
            error = ConfigurationError(
                f"No adapter configured for source '{work_item.source_name}'",
                context={"source_name": work_item.source_name, "profile_id": work_item.profile_id}
            )
            return await self._fail(work_item, error, retry_count, delivery)

        # 2. Fetch
        try:
            raw_items = await self._fetch(adapter, profile, work_item)
        except InfrastructureError:
            raise
        except Exception as e:
            return await self._fail(work_item, e, retry_count, delivery)

        # 3. Write each item
        written = 0
        item_error: Optional[Exception] = None
        for raw_item in raw_items:
            try:
                await self._write_item(work_item, profile, raw_item)
            except InfrastructureError:
                raise
            except Exception as e:
                item_error = e
                break
            written += 1

        if item_error is not None and written == 0:
            return await self._fail(work_item, item_error, retry_count, delivery)

        # 4. Settle
        if item_error is None:
            status, message = FetchStatus.SUCCESS, None
        else:
            status = FetchStatus.PARTIAL
            message = (
                f"{written} of {len(raw_items)} items written; "
                f"stopped at {type(item_error).__name__}: {item_error}"
            )

        await self.watermark.finalize(
            work_item.profile_id,
            work_item.cycle_date,
            status,
            retry_count,
            message,
            items_written=written
        )
        await self.watermark.advance_last_checked(work_item.profile_id, work_item.scheduled_at)
        await self._ack(delivery)

        if status is FetchStatus.SUCCESS:
            logger.info(f"Ingested {written} items for {label}")
            return Outcome(ProcessingStatus.SUCCESS, len(raw_items), written, retry_count)

        logger.warning(f"Partial ingest for {label}: {message}")
        return Outcome(ProcessingStatus.PARTIAL, len(raw_items), written, retry_count, message)

    async def _fetch(self, adapter: SourceAdapter, profile: Profile, work_item: WorkItem) -> List[RawItem]:
        waited = await self.rate_limiters.for_source(work_item.source_name).acquire()
        if waited:
            logger.debug(f"Waited {waited:.2f}s for {work_item.source_name} rate limit")

        since = work_item.scheduled_at - self.lookback
        try:
            return await asyncio.wait_for(
                adapter.fetch(profile.handle, since=since),
                timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientSourceError(
                f"Fetch from {work_item.source_name} exceeded {self.fetch_timeout}s",
                context={"source_name": work_item.source_name, "handle": profile.handle},
                original_exception=e
            )

    async def _write_item(self, work_item: WorkItem, profile: Profile, raw_item: RawItem) -> None:
        path = archive_path(
            work_item.source_name, work_item.cycle_date, work_item.entity_id, raw_item.post_id
        )
        # A rejected item leaves no archive file
        record = self._normalizer(work_item.source_name).normalize(
            raw_item, profile.id, work_item.source_id, raw_path=path
        )

        try:
            await asyncio.wait_for(
                self.archive.put(path, encode_payload(raw_item.raw_json)),
                timeout=self.sink_timeout
            )
        except asyncio.TimeoutError as e:
            raise ArchiveWriteError(
                f"Archive write exceeded {self.sink_timeout}s",
                context={"operation": "PUT", "path": path},
                original_exception=e
            )

        try:
            await asyncio.wait_for(
                self.structured_sink.upsert_record(record),
                timeout=self.sink_timeout
            )
        except asyncio.TimeoutError as e:
            raise UpsertError(
                f"Upsert exceeded {self.sink_timeout}s",
                context={"operation": "UPSERT", "profile_id": profile.id, "post_id": record.post_id},
                original_exception=e
            )

    def _normalizer(self, source_name: str) -> MetadataNormalizer:
        normalizer = self._normalizers.get(source_name)
        if normalizer is None:
            normalizer = self._normalizers[source_name] = MetadataNormalizer(source_name)
        return normalizer

    async def _fail(
        self,
        work_item: WorkItem,
        error: BaseException,
        retry_count: int,
        delivery: Optional[Delivery]
    ) -> Outcome:
        decision = await self.retry_manager.handle_failure(work_item, error, retry_count, delivery)
        if decision.disposition is Disposition.RETRY:
            return Outcome(
                ProcessingStatus.RETRY_SCHEDULED,
                retry_count=decision.retry_count,
                message=str(error),
                delay_seconds=decision.delay_seconds
            )
        return Outcome(ProcessingStatus.DEAD, retry_count=decision.retry_count, message=str(error))

    async def _ack(self, delivery: Optional[Delivery]) -> None:
        if delivery is not None:
            await self.bus.ack(delivery)
