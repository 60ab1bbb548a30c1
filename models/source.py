from sqlalchemy import Column, Integer, String, Enum, DateTime
from models.base import Base, AuthType, utcnow


class Source(Base):
    """
    A named external data provider (static reference data).

    Rows are seeded by scripts/init_db.py; `name` selects the adapter
    variant at worker startup.
    """
    __tablename__ = "sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=True)
    endpoint = Column(String(500), nullable=False)
    auth_type = Column(Enum(AuthType), nullable=False, default=AuthType.OAUTH2)

    created_at = Column(DateTime, nullable=False, default=utcnow)
