from sqlalchemy import Column, Integer, Enum, Date, DateTime, Text, ForeignKey, Index
from models.base import Base, IdType, FetchStatus, utcnow


class FetchLogEntry(Base):
    """
    One fetch attempt record per (profile, cycle date).

    Purpose:
    - Ground truth for what was scheduled and how it ended
    - Persisted retry count so backoff state survives restarts
    - Audit history: the next day's attempt is a new row

    Design:
    - Created PENDING by the scheduler, moved to SUCCESS / PARTIAL / FAILED
      by the consumer or the retry manager
    - retry_count only increases; status only leaves PENDING once
    - published_at is set once the work item is on the bus, so a restarted
      scheduler can republish an entry it created but never sent
    """
    __tablename__ = "fetch_log"

    id = Column(IdType, primary_key=True, autoincrement=True)

    profile_id = Column(IdType, ForeignKey("profiles.id"), nullable=False, index=True)
    cycle_date = Column(Date, nullable=False, index=True)

    status = Column(Enum(FetchStatus), nullable=False, default=FetchStatus.PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)  # Last error verbatim
    items_written = Column(Integer, nullable=False, default=0)

    published_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_fetch_log_profile_date", "profile_id", "cycle_date", unique=True),
        Index("idx_fetch_log_date_status", "cycle_date", "status"),
    )
