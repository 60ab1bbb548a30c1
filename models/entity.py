from sqlalchemy import Column, String, Float, DateTime, Index
from sqlalchemy.orm import relationship
from models.base import Base, IdType, utcnow


class Entity(Base):
    """
    A tracked restaurant.

    Created, renamed and deleted only by entity-management operations;
    the ingestion pipeline reads it and never writes it.
    """
    __tablename__ = "entities"

    id = Column(IdType, primary_key=True, autoincrement=True)

    name = Column(String(300), nullable=False)
    city = Column(String(120), nullable=True, index=True)
    address = Column(String(500), nullable=True)
    postal_code = Column(String(20), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    profiles = relationship("Profile", back_populates="entity")

    __table_args__ = (
        Index("idx_entity_name_city", "name", "city"),
    )
