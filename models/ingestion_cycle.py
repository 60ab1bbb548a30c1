from sqlalchemy import Column, String, Enum, Date, DateTime, Float, Integer, Text, Index
from models.base import Base, IdType, CycleStatus, utcnow
import uuid


def _new_run_id() -> str:
    return str(uuid.uuid4())


class IngestionCycle(Base):
    """
    Tracks each scheduling pass.

    Purpose:
    - Audit trail of all cycles
    - Distinguish completed enumeration from an abandoned one (deadline)
    - Enqueue statistics for operators
    """
    __tablename__ = "ingestion_cycles"

    id = Column(IdType, primary_key=True, autoincrement=True)
    run_id = Column(String(36), default=_new_run_id, unique=True, nullable=False, index=True)

    cycle_date = Column(Date, nullable=False, index=True)
    status = Column(Enum(CycleStatus), default=CycleStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    profiles_scanned = Column(Integer, default=0)
    items_enqueued = Column(Integer, default=0)
    items_skipped = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_cycle_date_started", "cycle_date", "started_at"),
    )
