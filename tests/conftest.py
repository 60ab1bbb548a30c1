"""
Pytest configuration and fixtures

Tests run against a temporary SQLite file (aiosqlite) so no database
server is needed; every test gets a fresh file.
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from ingestion.archive import LocalRawArchive
from ingestion.bus import (
    MessageBus,
    INGEST_REQUESTS_TOPIC,
    INGEST_DEADLETTER_TOPIC,
    STRUCTURED_WRITER_GROUP,
    OPERATOR_TRIAGE_GROUP,
)
from ingestion.consumer import IngestionConsumer
from ingestion.rate_limit import RateLimiterRegistry
from ingestion.retry import RetryManager, RetryPolicy
from ingestion.scheduler import CycleScheduler
from ingestion.structured_sink import StructuredSink
from ingestion.watermark import WatermarkStore
from models import Base, Entity, Source, Profile
from models.base import AuthType
from tests.factories import CYCLE_TIME, FakeAdapter, FakeClock


@pytest.fixture
def clock():
    return FakeClock(CYCLE_TIME)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ingest_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def sources(session_factory) -> Dict[str, Source]:
    """The three seeded sources keyed by name"""
    async with session_factory() as session:
        rows = [
            Source(name="instagram", display_name="Instagram", endpoint="https://graph.example.com", auth_type=AuthType.OAUTH2),
            Source(name="facebook", display_name="Facebook", endpoint="https://graph.example.com", auth_type=AuthType.OAUTH2),
            Source(name="tiktok", display_name="TikTok", endpoint="https://tiktok.example.com", auth_type=AuthType.OAUTH2),
        ]
        session.add_all(rows)
        await session.commit()
        return {row.name: row for row in rows}


@pytest.fixture
def make_profile(session_factory, sources):
    """Create an entity plus one profile; returns the Profile"""

    async def _make(
        source_name: str = "instagram",
        handle: Optional[str] = None,
        last_checked: Optional[datetime] = None,
        is_active: bool = True,
        entity_name: str = "Trattoria Roma"
    ) -> Profile:
        async with session_factory() as session:
            entity = Entity(name=entity_name, city="Berlin")
            session.add(entity)
            await session.flush()
            profile = Profile(
                entity_id=entity.id,
                source_id=sources[source_name].id,
                handle=handle or f"{entity_name.lower().replace(' ', '_')}_{source_name}",
                is_active=is_active,
                last_checked=last_checked
            )
            session.add(profile)
            await session.commit()
            return profile

    return _make


@pytest_asyncio.fixture
async def bus(session_factory, clock) -> MessageBus:
    bus = MessageBus(session_factory, visibility_timeout=600, clock=clock)
    await bus.ensure_subscription(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP)
    await bus.ensure_subscription(INGEST_DEADLETTER_TOPIC, OPERATOR_TRIAGE_GROUP)
    return bus


@pytest.fixture
def watermark(session_factory, clock) -> WatermarkStore:
    return WatermarkStore(session_factory, clock=clock)


@pytest.fixture
def structured_sink(session_factory, clock) -> StructuredSink:
    return StructuredSink(session_factory, clock=clock)


@pytest.fixture
def archive(tmp_path) -> LocalRawArchive:
    return LocalRawArchive(str(tmp_path / "archive"))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=5, base_delay=30, max_delay=3600)


@pytest.fixture
def retry_manager(bus, watermark, retry_policy, clock) -> RetryManager:
    return RetryManager(bus, watermark, retry_policy, clock=clock)


@pytest.fixture
def adapters() -> Dict[str, FakeAdapter]:
    return {name: FakeAdapter(name) for name in ("instagram", "facebook", "tiktok")}


@pytest.fixture
def consumer(bus, watermark, structured_sink, archive, adapters, retry_manager, clock) -> IngestionConsumer:
    return IngestionConsumer(
        bus=bus,
        watermark=watermark,
        structured_sink=structured_sink,
        archive=archive,
        adapters=adapters,
        rate_limiters=RateLimiterRegistry({}, default_rate=0),
        retry_manager=retry_manager,
        fetch_timeout=5,
        sink_timeout=5,
        lookback=timedelta(days=7),
        clock=clock
    )


@pytest.fixture
def cycle_scheduler(session_factory, bus, watermark, clock) -> CycleScheduler:
    return CycleScheduler(
        session_factory,
        bus,
        watermark,
        refresh_interval=timedelta(hours=24),
        refresh_grace=timedelta(minutes=60),
        page_size=2,
        deadline=timedelta(minutes=120),
        clock=clock
    )
