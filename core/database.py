"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
from core.exceptions import ConfigurationError
import logging

logger = logging.getLogger(__name__)


def upsert_insert(session: AsyncSession, table):
    """
    INSERT statement of the bound dialect, exposing its native
    ON CONFLICT primitives (on_conflict_do_update / on_conflict_do_nothing).
    """
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise ConfigurationError(
        f"Unsupported database dialect for upserts: {dialect_name}",
        context={"dialect": dialect_name}
    )


def build_engine(database_url: str = None) -> AsyncEngine:
    """Create an async engine; every worker task opens its own short sessions"""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=False,
        poolclass=NullPool,
        future=True
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine()

# Create session factory
async_session_maker = build_session_factory(engine)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
