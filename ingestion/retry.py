"""
Retry / dead-letter state machine for work item attempts.

    Pending -> Success | Partial          (decided by the consumer)
    Pending -> Failed-Retryable           (retry count + 1, redelivered after backoff)
    Pending -> Dead                       (fetch log Failed, dead-letter topic)

The retry count lives in the fetch log, not in memory, so a restarted
worker picks up where the last attempt left off. Backoff is applied by
releasing the same bus delivery with a delay, which keeps at most one
attempt per work item in flight.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from core.config import settings
from core.exceptions import (
    ErrorKind,
    IngestionException,
    RateLimitedError,
    classify_error,
    is_retryable,
)
from ingestion.bus import (
    Delivery,
    MessageBus,
    INGEST_DEADLETTER_TOPIC,
    INGEST_REQUESTS_TOPIC,
    OPERATOR_TRIAGE_GROUP,
)
from ingestion.watermark import WatermarkStore
from models.base import FetchStatus, utcnow
from schemas.work_item import DeadLetterMessage, WorkItem

logger = logging.getLogger(__name__)


class Disposition(str, enum.Enum):
    RETRY = "failed_retryable"
    DEAD = "dead"


@dataclass(frozen=True)
class RetryDecision:
    disposition: Disposition
    retry_count: int
    delay_seconds: float
    error_kind: ErrorKind


class RetryPolicy:
    """Exponential backoff bounded by max_retries"""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None
    ):
        self.max_retries = max_retries if max_retries is not None else settings.MAX_RETRIES
        self.base_delay = base_delay if base_delay is not None else settings.BACKOFF_BASE_SECONDS
        self.max_delay = max_delay if max_delay is not None else settings.BACKOFF_MAX_SECONDS

    def backoff_seconds(self, retry_count: int) -> float:
        """base_delay * 2^retry_count, capped at max_delay"""
        return min(self.base_delay * (2 ** retry_count), self.max_delay)


class RetryManager:
    """Applies the retry policy and performs the resulting transitions"""

    def __init__(
        self,
        bus: MessageBus,
        watermark: WatermarkStore,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.bus = bus
        self.watermark = watermark
        self.policy = policy or RetryPolicy()
        self.clock = clock

    def decide(self, error: BaseException, retry_count: int) -> RetryDecision:
        """
        Decide what happens after a failed attempt.

        Args:
            error: The failure
            retry_count: Retries already spent on this work item

        Returns:
            RetryDecision carrying the retry count to persist and the delay
        """
        kind = classify_error(error)

        if not is_retryable(error):
            return RetryDecision(Disposition.DEAD, retry_count, 0.0, kind)

        if retry_count >= self.policy.max_retries:
            return RetryDecision(Disposition.DEAD, retry_count, 0.0, kind)

        delay = self.policy.backoff_seconds(retry_count)
        if isinstance(error, RateLimitedError) and error.retry_after:
            delay = max(delay, float(error.retry_after))

        return RetryDecision(Disposition.RETRY, retry_count + 1, delay, kind)

    async def handle_failure(
        self,
        work_item: WorkItem,
        error: BaseException,
        retry_count: int,
        delivery: Optional[Delivery] = None
    ) -> RetryDecision:
        """
        Persist and execute the decision for a failed attempt.

        RETRY: the fetch log keeps PENDING with the new retry count and the
        delivery is released with the backoff delay.
        DEAD: the dead-letter message is published, the fetch log becomes
        FAILED and the delivery is acknowledged.
        """
        decision = self.decide(error, retry_count)
        message = str(error)

        if decision.disposition is Disposition.RETRY:
            await self.watermark.record_retry(
                work_item.profile_id, work_item.cycle_date, decision.retry_count, message
            )
            if delivery is not None:
                await self.bus.nack(delivery, decision.delay_seconds)
            logger.warning(
                f"Profile {work_item.profile_id} ({work_item.source_name}) failed with "
                f"{decision.error_kind.value}; retry {decision.retry_count}/{self.policy.max_retries} "
                f"in {decision.delay_seconds:.0f}s"
            )
            return decision

        context = error.to_dict()["context"] if isinstance(error, IngestionException) else {}
        dead_letter = DeadLetterMessage(
            work_item=work_item,
            error_kind=decision.error_kind.value,
            error_type=type(error).__name__,
            message=message,
            retry_count=decision.retry_count,
            context=context,
            failed_at=self.clock()
        )
        # A failed publish leaves the entry PENDING; redelivery dead-letters it again
        await self.bus.publish(
            INGEST_DEADLETTER_TOPIC,
            dead_letter.to_payload(),
            routing_key=work_item.source_name,
            require_subscribers=True
        )
        await self.watermark.finalize(
            work_item.profile_id,
            work_item.cycle_date,
            FetchStatus.FAILED,
            decision.retry_count,
            message
        )

        if delivery is not None:
            await self.bus.ack(delivery)

        logger.error(
            f"Profile {work_item.profile_id} ({work_item.source_name}) dead-lettered after "
            f"{decision.retry_count} retries: {message}",
            extra={"error_context": dead_letter.to_payload()}
        )
        return decision

    async def replay_dead_letter(self, delivery_id: int, triage_group: str = OPERATOR_TRIAGE_GROUP) -> Optional[int]:
        """
        Re-publish a dead-lettered work item and acknowledge its triage delivery.

        The fetch log entry for that day stays FAILED; the replayed attempt
        still advances last_checked on success.

        Returns:
            The new message id, or None if the delivery no longer exists
        """
        delivery = await self.bus.get_delivery(delivery_id)
        if delivery is None:
            return None
        if delivery.topic != INGEST_DEADLETTER_TOPIC or delivery.consumer_group != triage_group:
            return None

        dead_letter = DeadLetterMessage.from_payload(delivery.payload)
        work_item = dead_letter.work_item.model_copy(update={"replay": True})

        message_id = await self.bus.publish(
            INGEST_REQUESTS_TOPIC,
            work_item.to_payload(),
            routing_key=work_item.source_name,
            require_subscribers=True
        )
        await self.bus.ack(delivery)

        logger.info(
            f"Replayed dead letter {delivery_id} for profile {work_item.profile_id} as message {message_id}"
        )
        return message_id
