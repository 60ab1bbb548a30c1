"""
Durable publish/subscribe work queue backed by the database.

Delivery semantics:
- At-least-once: a claimed delivery that is not acknowledged within the
  visibility window becomes claimable again
- Fan-out: every consumer group subscribed to a topic gets its own delivery
  of each message published after it subscribed
- No ordering guarantee across messages
- Explicit pull model: consumers call pull() (or iterate subscribe()) and
  must ack() or nack() what they claimed

Producers only insert rows, so publishing never waits on consumers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.database import upsert_insert
from core.exceptions import BusUnavailableError
from models.base import utcnow
from models.bus import BusSubscription, BusMessage, BusDelivery

logger = logging.getLogger(__name__)

INGEST_REQUESTS_TOPIC = "ingest-requests"
INGEST_DEADLETTER_TOPIC = "ingest-deadletter"

STRUCTURED_WRITER_GROUP = "structured-writer"
RAW_ARCHIVER_GROUP = "raw-archiver"
OPERATOR_TRIAGE_GROUP = "operator-triage"

# (topic, group) pairs every deployment needs before anything is published
DEFAULT_SUBSCRIPTIONS = (
    (INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP),
    (INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP),
)


@dataclass(frozen=True)
class Delivery:
    """A message as seen by one consumer group"""
    delivery_id: int
    message_id: int
    topic: str
    consumer_group: str
    payload: Dict[str, Any]
    routing_key: Optional[str]
    delivery_count: int
    published_at: datetime
    lease_token: Optional[str] = None
    visible_at: Optional[datetime] = None


class MessageBus:
    """
    Database-backed message bus.

    Each operation opens its own short transaction so that many worker
    tasks can share one bus instance.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        visibility_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session_factory = session_factory
        self.visibility_timeout = timedelta(
            seconds=visibility_timeout if visibility_timeout is not None
            else settings.VISIBILITY_TIMEOUT_SECONDS
        )
        self.clock = clock

    async def ensure_subscription(self, topic: str, consumer_group: str) -> None:
        """Register a consumer group on a topic (idempotent)"""
        try:
            async with self.session_factory() as session:
                stmt = upsert_insert(session, BusSubscription).values(
                    topic=topic,
                    consumer_group=consumer_group,
                    created_at=self.clock()
                ).on_conflict_do_nothing(index_elements=["topic", "consumer_group"])
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to register subscription",
                context={"topic": topic, "consumer_group": consumer_group},
                original_exception=e
            )

    async def ensure_subscriptions(self, subscriptions: Iterable[Tuple[str, str]] = DEFAULT_SUBSCRIPTIONS) -> None:
        for topic, consumer_group in subscriptions:
            await self.ensure_subscription(topic, consumer_group)

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        routing_key: Optional[str] = None,
        require_subscribers: bool = False
    ) -> int:
        """
        Store a message and one delivery per subscribed group.

        Args:
            require_subscribers: Raise instead of storing a message no group
                would receive

        Returns:
            The message id

        Raises:
            BusUnavailableError: database failure, or no subscribed group
                while require_subscribers is set; nothing is stored
        """
        now = self.clock()
        try:
            async with self.session_factory() as session:
                groups = (await session.execute(
                    select(BusSubscription.consumer_group).where(BusSubscription.topic == topic)
                )).scalars().all()
                if not groups and require_subscribers:
                    raise BusUnavailableError(
                        f"No consumer group subscribed to '{topic}'",
                        context={"topic": topic, "routing_key": routing_key}
                    )

                message = BusMessage(
                    topic=topic,
                    routing_key=routing_key,
                    payload=payload,
                    published_at=now
                )
                session.add(message)
                await session.flush()

                for group in groups:
                    session.add(BusDelivery(
                        message_id=message.id,
                        consumer_group=group,
                        visible_at=now,
                        delivery_count=0
                    ))

                await session.commit()
                message_id = message.id
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to publish message",
                context={"topic": topic, "routing_key": routing_key},
                original_exception=e
            )

        if not groups:
            logger.warning(f"Published message {message_id} to '{topic}' with no subscribers")
        return message_id

    async def pull(
        self,
        topic: str,
        consumer_group: str,
        max_messages: int = 1,
        routing_key: Optional[str] = None
    ) -> List[Delivery]:
        """
        Claim up to max_messages visible deliveries.

        Claimed deliveries are hidden for the visibility window and carry a
        fresh lease token; the visible_at guard in the UPDATE makes a claim
        lost to a concurrent puller a no-op.
        """
        now = self.clock()
        hidden_until = now + self.visibility_timeout
        claimed: List[Delivery] = []

        try:
            async with self.session_factory() as session:
                stmt = (
                    select(BusDelivery, BusMessage)
                    .join(BusMessage, BusDelivery.message_id == BusMessage.id)
                    .where(
                        BusDelivery.consumer_group == consumer_group,
                        BusMessage.topic == topic,
                        BusDelivery.acked_at.is_(None),
                        BusDelivery.visible_at <= now
                    )
                )
                if routing_key is not None:
                    stmt = stmt.where(BusMessage.routing_key == routing_key)
                stmt = (
                    stmt.order_by(BusDelivery.visible_at, BusDelivery.id)
                    .limit(max_messages)
                    .with_for_update(skip_locked=True, of=BusDelivery)
                )

                rows = (await session.execute(stmt)).all()
                candidates = [
                    (delivery.id, delivery.visible_at, delivery.delivery_count, message)
                    for delivery, message in rows
                ]

                for delivery_id, visible_at, delivery_count, message in candidates:
                    token = str(uuid.uuid4())
                    result = await session.execute(
                        update(BusDelivery)
                        .where(
                            BusDelivery.id == delivery_id,
                            BusDelivery.visible_at == visible_at,
                            BusDelivery.acked_at.is_(None)
                        )
                        .values(
                            visible_at=hidden_until,
                            lease_token=token,
                            delivery_count=BusDelivery.delivery_count + 1,
                            last_delivered_at=now
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        continue

                    claimed.append(Delivery(
                        delivery_id=delivery_id,
                        message_id=message.id,
                        topic=message.topic,
                        consumer_group=consumer_group,
                        payload=message.payload,
                        routing_key=message.routing_key,
                        delivery_count=delivery_count + 1,
                        published_at=message.published_at,
                        lease_token=token,
                        visible_at=hidden_until
                    ))

                await session.commit()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to pull messages",
                context={"topic": topic, "consumer_group": consumer_group},
                original_exception=e
            )

        if claimed:
            logger.debug(f"Claimed {len(claimed)} deliveries from '{topic}' for '{consumer_group}'")
        return claimed

    async def purge_acked(self, older_than: datetime) -> Tuple[int, int]:
        """
        Delete deliveries acknowledged before older_than, then messages
        published before it that have no delivery left.

        A message with an unacknowledged delivery in any group is kept.

        Returns:
            (deliveries deleted, messages deleted)
        """
        try:
            async with self.session_factory() as session:
                deliveries = await session.execute(
                    delete(BusDelivery)
                    .where(BusDelivery.acked_at.is_not(None), BusDelivery.acked_at < older_than)
                    .execution_options(synchronize_session=False)
                )
                messages = await session.execute(
                    delete(BusMessage)
                    .where(BusMessage.published_at < older_than, ~BusMessage.deliveries.any())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to purge acknowledged deliveries",
                context={"older_than": older_than.isoformat()},
                original_exception=e
            )

        logger.info(
            f"Purged {deliveries.rowcount} acknowledged deliveries and {messages.rowcount} messages "
            f"older than {older_than.isoformat()}"
        )
        return deliveries.rowcount, messages.rowcount

    async def ack(self, delivery: Delivery) -> bool:
        """
        Acknowledge a delivery so it is never redelivered to its group.

        A delivery pulled with a lease must present it; deliveries listed by
        operator queries (no lease) are acknowledged directly.

        Returns:
            False if the lease was lost (the message was reclaimed) or the
            delivery was already acknowledged
        """
        now = self.clock()
        stmt = update(BusDelivery).where(
            BusDelivery.id == delivery.delivery_id,
            BusDelivery.acked_at.is_(None)
        )
        if delivery.lease_token is not None:
            stmt = stmt.where(BusDelivery.lease_token == delivery.lease_token)
        stmt = stmt.values(acked_at=now, lease_token=None).execution_options(synchronize_session=False)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to acknowledge delivery",
                context={"delivery_id": delivery.delivery_id},
                original_exception=e
            )

        if result.rowcount != 1:
            logger.warning(
                f"Ack for delivery {delivery.delivery_id} ignored: lease lost or already acknowledged"
            )
            return False
        return True

    async def nack(self, delivery: Delivery, delay_seconds: float = 0.0) -> bool:
        """Release a claimed delivery; it becomes visible again after delay_seconds"""
        now = self.clock()
        stmt = (
            update(BusDelivery)
            .where(
                BusDelivery.id == delivery.delivery_id,
                BusDelivery.lease_token == delivery.lease_token,
                BusDelivery.acked_at.is_(None)
            )
            .values(visible_at=now + timedelta(seconds=delay_seconds), lease_token=None)
            .execution_options(synchronize_session=False)
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to release delivery",
                context={"delivery_id": delivery.delivery_id},
                original_exception=e
            )

        if result.rowcount != 1:
            logger.warning(f"Nack for delivery {delivery.delivery_id} ignored: lease lost")
            return False
        return True

    async def subscribe(
        self,
        topic: str,
        consumer_group: str,
        routing_key: Optional[str] = None,
        stop_event: Optional[asyncio.Event] = None,
        poll_interval: Optional[float] = None,
        batch_size: int = 1
    ) -> AsyncIterator[Delivery]:
        """
        Pull loop yielding deliveries until stop_event is set.

        The caller owns ack/nack of every yielded delivery.
        """
        stop_event = stop_event or asyncio.Event()
        poll_interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS

        while not stop_event.is_set():
            deliveries = await self.pull(topic, consumer_group, batch_size, routing_key)
            if not deliveries:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            for delivery in deliveries:
                yield delivery

    # ------------------------------------------------------------------
    # Operator queries
    # ------------------------------------------------------------------

    async def list_pending(
        self,
        topic: str,
        consumer_group: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Delivery]:
        """Unacknowledged deliveries for a group, oldest first, without claiming them"""
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(BusDelivery, BusMessage)
                    .join(BusMessage, BusDelivery.message_id == BusMessage.id)
                    .where(
                        BusMessage.topic == topic,
                        BusDelivery.consumer_group == consumer_group,
                        BusDelivery.acked_at.is_(None)
                    )
                    .order_by(BusMessage.published_at, BusDelivery.id)
                    .offset(offset)
                    .limit(limit)
                )).all()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to list deliveries",
                context={"topic": topic, "consumer_group": consumer_group},
                original_exception=e
            )

        return [self._to_delivery(delivery, message) for delivery, message in rows]

    async def count_pending(self, topic: str, consumer_group: str) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(func.count())
                    .select_from(BusDelivery)
                    .join(BusMessage, BusDelivery.message_id == BusMessage.id)
                    .where(
                        BusMessage.topic == topic,
                        BusDelivery.consumer_group == consumer_group,
                        BusDelivery.acked_at.is_(None)
                    )
                )
                return result.scalar() or 0
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to count deliveries",
                context={"topic": topic, "consumer_group": consumer_group},
                original_exception=e
            )

    async def get_delivery(self, delivery_id: int) -> Optional[Delivery]:
        """Look up an unacknowledged delivery without claiming it"""
        try:
            async with self.session_factory() as session:
                row = (await session.execute(
                    select(BusDelivery, BusMessage)
                    .join(BusMessage, BusDelivery.message_id == BusMessage.id)
                    .where(BusDelivery.id == delivery_id)
                )).first()
        except SQLAlchemyError as e:
            raise BusUnavailableError(
                "Failed to load delivery",
                context={"delivery_id": delivery_id},
                original_exception=e
            )

        if row is None:
            return None
        delivery, message = row
        if delivery.acked_at is not None:
            return None
        return self._to_delivery(delivery, message)

    @staticmethod
    def _to_delivery(delivery: BusDelivery, message: BusMessage) -> Delivery:
        return Delivery(
            delivery_id=delivery.id,
            message_id=message.id,
            topic=message.topic,
            consumer_group=delivery.consumer_group,
            payload=message.payload,
            routing_key=message.routing_key,
            delivery_count=delivery.delivery_count,
            published_at=message.published_at,
            lease_token=None,
            visible_at=delivery.visible_at
        )
