"""
Worker pool draining the ingest-requests topic.

One group of worker tasks per source, sized by PER_SOURCE_CONCURRENCY.
Workers only pull deliveries routed to their own source, so a slow or
throttled source ties up its own workers and nobody else's.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from core.config import settings
from core.exceptions import InfrastructureError
from ingestion.bus import MessageBus, INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP
from ingestion.consumer import IngestionConsumer, ProcessingStatus

logger = logging.getLogger(__name__)


@dataclass
class PoolStats:
    processed: int = 0
    errors: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    def record(self, status: ProcessingStatus) -> None:
        self.processed += 1
        self.by_status[status.value] = self.by_status.get(status.value, 0) + 1


class WorkerPool:
    """
    Bounded per-source worker tasks around an IngestionConsumer.

    run() keeps polling until stop() is called; run(drain=True) returns
    once every worker finds its source's queue empty.
    """

    def __init__(
        self,
        bus: MessageBus,
        consumer: IngestionConsumer,
        sources: Iterable[str],
        concurrency: Optional[Dict[str, int]] = None,
        consumer_group: str = STRUCTURED_WRITER_GROUP,
        poll_interval: Optional[float] = None
    ):
        self.bus = bus
        self.consumer = consumer
        self.sources = list(sources)
        self.concurrency = {
            name: (concurrency or {}).get(name, settings.concurrency_for(name))
            for name in self.sources
        }
        self.consumer_group = consumer_group
        self.poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        self.stats = PoolStats()
        self._stop = asyncio.Event()
        self._fatal: Optional[BaseException] = None

    def stop(self) -> None:
        self._stop.set()

    async def run(self, drain: bool = False) -> PoolStats:
        """
        Start all workers and wait for them to finish.

        Raises:
            InfrastructureError: if any worker hit one; the rest are stopped
        """
        self._stop.clear()
        tasks: List[asyncio.Task] = []
        for source_name in self.sources:
            size = max(1, self.concurrency[source_name])
            logger.info(f"Starting {size} workers for {source_name}")
            for index in range(size):
                tasks.append(asyncio.create_task(
                    self._worker(source_name, index, drain),
                    name=f"worker-{source_name}-{index}"
                ))

        try:
            await asyncio.gather(*tasks)
        finally:
            self._stop.set()
            for task in tasks:
                if not task.done():
                    task.cancel()

        if self._fatal is not None:
            raise self._fatal

        logger.info(
            f"Worker pool finished: {self.stats.processed} processed, "
            f"{self.stats.errors} errors, by status {self.stats.by_status}"
        )
        return self.stats

    async def drain(self) -> PoolStats:
        """Process until every source queue is empty"""
        return await self.run(drain=True)

    async def _worker(self, source_name: str, index: int, drain: bool) -> None:
        while not self._stop.is_set():
            try:
                deliveries = await self.bus.pull(
                    INGEST_REQUESTS_TOPIC,
                    self.consumer_group,
                    max_messages=1,
                    routing_key=source_name
                )
            except InfrastructureError as e:
                self._halt(source_name, index, e)
                return

            if not deliveries:
                if drain:
                    return
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            for delivery in deliveries:
                try:
                    outcome = await self.consumer.handle(delivery)
                except InfrastructureError as e:
                    self._halt(source_name, index, e)
                    return
                except Exception:
                    # Left unacknowledged: the bus redelivers it after the visibility window
                    self.stats.errors += 1
                    logger.exception(
                        f"Worker {source_name}-{index} failed on delivery {delivery.delivery_id}"
                    )
                    continue
                self.stats.record(outcome.status)

    def _halt(self, source_name: str, index: int, error: InfrastructureError) -> None:
        logger.critical(
            f"Worker {source_name}-{index} stopping the pool: {error}",
            extra={"error_context": error.to_dict()}
        )
        if self._fatal is None:
            self._fatal = error
        self._stop.set()
