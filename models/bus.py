from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, IdType, JSONType, utcnow


class BusSubscription(Base):
    """
    A consumer group registered on a topic.

    Each published message gets one delivery per group subscribed at
    publish time, so groups read the same stream independently.
    """
    __tablename__ = "bus_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(100), nullable=False)
    consumer_group = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_subscription_topic_group", "topic", "consumer_group", unique=True),
    )


class BusMessage(Base):
    """
    A published message. Immutable once written.

    routing_key carries the source name so per-source worker pools can
    pull only their own work.
    """
    __tablename__ = "bus_messages"

    id = Column(IdType, primary_key=True, autoincrement=True)
    topic = Column(String(100), nullable=False, index=True)
    routing_key = Column(String(100), nullable=True)
    payload = Column(JSONType, nullable=False)
    published_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    deliveries = relationship("BusDelivery", back_populates="message")

    __table_args__ = (
        Index("idx_message_topic_routing", "topic", "routing_key"),
    )


class BusDelivery(Base):
    """
    Delivery state of one message for one consumer group.

    Design:
    - visible_at: the delivery can be claimed once now >= visible_at
    - claiming pushes visible_at out by the visibility window and issues a
      new lease_token; an unacknowledged claim therefore redelivers
    - ack/nack must present the current lease_token
    - acked_at set means the delivery is finished for this group
    """
    __tablename__ = "bus_deliveries"

    id = Column(IdType, primary_key=True, autoincrement=True)
    message_id = Column(IdType, ForeignKey("bus_messages.id"), nullable=False, index=True)
    consumer_group = Column(String(100), nullable=False)

    visible_at = Column(DateTime, nullable=False, default=utcnow)
    lease_token = Column(String(36), nullable=True)
    delivery_count = Column(Integer, nullable=False, default=0)
    last_delivered_at = Column(DateTime, nullable=True)
    acked_at = Column(DateTime, nullable=True)

    message = relationship("BusMessage", back_populates="deliveries")

    __table_args__ = (
        Index("idx_delivery_group_visible", "consumer_group", "acked_at", "visible_at"),
    )
