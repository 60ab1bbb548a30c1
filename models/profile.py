from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from models.base import Base, IdType, utcnow


class Profile(Base):
    """
    Binding of one Entity to one Source.

    Design:
    - At most one profile per (entity, source)
    - is_active=False removes the profile from scheduling
    - last_checked is the refresh watermark; only the ingestion consumer
      advances it, and never backward
    """
    __tablename__ = "profiles"

    id = Column(IdType, primary_key=True, autoincrement=True)

    entity_id = Column(IdType, ForeignKey("entities.id"), nullable=False, index=True)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False, index=True)

    handle = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    last_checked = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    entity = relationship("Entity", back_populates="profiles")
    source = relationship("Source")

    __table_args__ = (
        Index("idx_profile_entity_source", "entity_id", "source_id", unique=True),
        Index("idx_profile_active_checked", "is_active", "last_checked"),
    )
