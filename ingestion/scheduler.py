import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import InfrastructureError, WatermarkStoreError
from ingestion.bus import MessageBus, INGEST_REQUESTS_TOPIC
from ingestion.watermark import WatermarkStore
from models.base import CycleStatus, FetchStatus, utcnow
from models.ingestion_cycle import IngestionCycle
from schemas.work_item import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    run_id: str
    cycle_date: date
    started_at: datetime
    completed: bool = False
    profiles_scanned: int = 0
    items_enqueued: int = 0
    items_skipped: int = 0
    work_items: List[WorkItem] = field(default_factory=list)


class CycleScheduler:
    """
    One scheduling pass: enumerate due profiles and enqueue a work item each.

    Re-running within the same cycle date never enqueues twice: every due
    profile first gets its fetch log entry, and only an entry that has not
    been published yet leads to a publish. The default subscriptions are
    registered before the first publish, and a publish no group would
    receive fails the cycle instead of marking the entry published.

    last_checked is set to the cycle time of the attempt that settled it, so
    a cycle that started late (misfire grace, or a manual run) would push
    its profiles past the next regular trigger. A profile is therefore due
    once last_checked is at least refresh_interval minus refresh_grace old;
    the grace must stay below the interval so a profile is never due twice
    in one day.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        bus: MessageBus,
        watermark: WatermarkStore,
        refresh_interval: Optional[timedelta] = None,
        refresh_grace: Optional[timedelta] = None,
        page_size: Optional[int] = None,
        deadline: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session_factory = session_factory
        self.bus = bus
        self.watermark = watermark
        self.refresh_interval = refresh_interval or timedelta(hours=settings.REFRESH_INTERVAL_HOURS)
        self.refresh_grace = (
            refresh_grace if refresh_grace is not None
            else timedelta(minutes=settings.REFRESH_GRACE_MINUTES)
        )
        self.page_size = page_size or settings.SCHEDULER_PAGE_SIZE
        self.deadline = deadline or timedelta(minutes=settings.CYCLE_DEADLINE_MINUTES)
        self.clock = clock

    async def run_cycle(self, now: Optional[datetime] = None, deadline: Optional[datetime] = None) -> CycleResult:
        """
        Enumerate profiles due at `now` and publish their work items.

        Args:
            now: Cycle time (defaults to the clock); becomes last_checked on success
            deadline: Stop enumerating after this time; already published
                items still drain normally

        Returns:
            CycleResult; completed is False when the deadline cut enumeration short

        Raises:
            InfrastructureError: bus or watermark store unavailable; the cycle
                row is marked FAILED and the whole cycle should be re-run
        """
        now = now or self.clock()
        deadline = deadline or (self.clock() + self.deadline)
        result = CycleResult(run_id=str(uuid.uuid4()), cycle_date=now.date(), started_at=now)

        logger.info(f"Cycle {result.run_id} started for {result.cycle_date} (deadline {deadline.isoformat()})")
        await self._record_start(result)

        try:
            await self.bus.ensure_subscriptions()
            async for due in self.watermark.get_profiles_due_for_refresh(
                now, self.refresh_interval - self.refresh_grace, self.page_size
            ):
                if self.clock() >= deadline:
                    logger.warning(
                        f"Cycle {result.run_id} hit its deadline after {result.profiles_scanned} profiles"
                    )
                    break

                result.profiles_scanned += 1
                entry, created = await self.watermark.ensure_pending(due.profile_id, result.cycle_date)

                if not created and (entry.published_at is not None or entry.status is not FetchStatus.PENDING):
                    result.items_skipped += 1
                    continue

                work_item = WorkItem(
                    entity_id=due.entity_id,
                    source_id=due.source_id,
                    profile_id=due.profile_id,
                    source_name=due.source_name,
                    cycle_date=result.cycle_date,
                    scheduled_at=now,
                    cycle_run_id=result.run_id
                )
                await self.bus.publish(
                    INGEST_REQUESTS_TOPIC,
                    work_item.to_payload(),
                    routing_key=due.source_name,
                    require_subscribers=True
                )
                await self.watermark.mark_published(entry.id, self.clock())

                result.items_enqueued += 1
                result.work_items.append(work_item)
            else:
                result.completed = True

        except InfrastructureError as e:
            logger.error(
                f"Cycle {result.run_id} failed: {e}",
                extra={"error_context": e.to_dict()}
            )
            await self._record_finish(result, CycleStatus.FAILED, str(e))
            raise

        status = CycleStatus.COMPLETED if result.completed else CycleStatus.ABANDONED
        await self._record_finish(result, status)

        logger.info(
            f"Cycle {result.run_id} {status.value}: scanned={result.profiles_scanned}, "
            f"enqueued={result.items_enqueued}, skipped={result.items_skipped}"
        )
        return result

    async def _record_start(self, result: CycleResult) -> None:
        try:
            async with self.session_factory() as session:
                session.add(IngestionCycle(
                    run_id=result.run_id,
                    cycle_date=result.cycle_date,
                    status=CycleStatus.RUNNING,
                    started_at=result.started_at
                ))
                await session.commit()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to record cycle start",
                context={"run_id": result.run_id},
                original_exception=e
            )

    async def _record_finish(self, result: CycleResult, status: CycleStatus, error_message: Optional[str] = None) -> None:
        finished = self.clock()
        try:
            async with self.session_factory() as session:
                cycle = (await session.execute(
                    select(IngestionCycle).where(IngestionCycle.run_id == result.run_id)
                )).scalar_one()
                cycle.status = status
                cycle.completed_at = finished
                cycle.duration_seconds = (finished - result.started_at).total_seconds()
                cycle.profiles_scanned = result.profiles_scanned
                cycle.items_enqueued = result.items_enqueued
                cycle.items_skipped = result.items_skipped
                cycle.error_message = error_message
                await session.commit()
        except SQLAlchemyError as e:
            # The cycle outcome already stands; losing the audit row must not mask it
            logger.error(f"Failed to record cycle {result.run_id} finish: {e}")


class IngestionScheduler:
    """
    Fires CycleScheduler.run_cycle on a daily cron trigger, then purges bus
    deliveries acknowledged longer ago than the retention window.
    """

    def __init__(
        self,
        cycle_scheduler: CycleScheduler,
        hour: Optional[int] = None,
        minute: Optional[int] = None,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.cycle_scheduler = cycle_scheduler
        self.hour = hour if hour is not None else settings.SCHEDULE_HOUR
        self.minute = minute if minute is not None else settings.SCHEDULE_MINUTE
        self.retention = retention or timedelta(days=settings.BUS_RETENTION_DAYS)
        self.clock = clock
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def run_cycle_job(self):
        """Job to run one scheduling pass"""
        logger.info("Scheduler: Starting ingestion cycle")
        try:
            result = await self.cycle_scheduler.run_cycle()
        except InfrastructureError as e:
            # Retried as a whole on the next trigger
            logger.error(f"Scheduler: ingestion cycle halted - {e}")
            return None
        await self.purge_bus()
        return result

    async def purge_bus(self) -> None:
        older_than = self.clock() - self.retention
        try:
            await self.cycle_scheduler.bus.purge_acked(older_than)
        except InfrastructureError as e:
            logger.error(f"Scheduler: bus purge failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_cycle_job,
            trigger=CronTrigger(hour=self.hour, minute=self.minute, timezone="UTC"),
            id="ingestion_cycle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600
        )
        self.scheduler.start()
        logger.info(f"Ingestion scheduler started (daily at {self.hour:02d}:{self.minute:02d} UTC)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Ingestion scheduler stopped")
