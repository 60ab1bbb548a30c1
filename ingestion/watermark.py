"""
Watermark store: per-profile refresh state and the fetch log.

This is the ground truth for "needs refresh":
- profiles.last_checked decides whether a profile is due
- fetch_log holds one entry per (profile, cycle date) carrying status,
  retry count and the last error

All writes are conditional single statements:
- a fetch log entry only leaves PENDING once and its retry count never decreases
- last_checked never moves backward
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import AsyncIterator, Callable, Optional, Tuple

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import upsert_insert
from core.exceptions import WatermarkStoreError
from models.base import FetchStatus, utcnow
from models.fetch_log import FetchLogEntry
from models.profile import Profile
from models.source import Source

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueProfile:
    """A profile selected for refresh by the scheduler"""
    profile_id: int
    entity_id: int
    source_id: int
    source_name: str
    handle: str
    last_checked: Optional[datetime]


class WatermarkStore:
    """Reads and conditionally advances per-profile refresh state"""

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profiles_due_for_refresh(
        self,
        as_of: datetime,
        refresh_interval: timedelta,
        page_size: int = 500
    ) -> AsyncIterator[DueProfile]:
        """
        Stream active profiles whose last_checked is unset or at least
        refresh_interval before as_of.

        Keyset-paged by profile id so the full profile set is never loaded
        at once; each page uses its own short session.
        """
        threshold = as_of - refresh_interval
        last_id = 0

        while True:
            try:
                async with self.session_factory() as session:
                    rows = (await session.execute(
                        select(
                            Profile.id,
                            Profile.entity_id,
                            Profile.source_id,
                            Source.name,
                            Profile.handle,
                            Profile.last_checked
                        )
                        .join(Source, Profile.source_id == Source.id)
                        .where(
                            Profile.is_active.is_(True),
                            or_(Profile.last_checked.is_(None), Profile.last_checked <= threshold),
                            Profile.id > last_id
                        )
                        .order_by(Profile.id)
                        .limit(page_size)
                    )).all()
            except SQLAlchemyError as e:
                raise WatermarkStoreError(
                    "Failed to scan profiles due for refresh",
                    context={"as_of": as_of.isoformat(), "after_profile_id": last_id},
                    original_exception=e
                )

            for row in rows:
                yield DueProfile(
                    profile_id=row[0],
                    entity_id=row[1],
                    source_id=row[2],
                    source_name=row[3],
                    handle=row[4],
                    last_checked=row[5]
                )

            if len(rows) < page_size:
                return
            last_id = rows[-1][0]

    async def get_profile(self, profile_id: int) -> Optional[Profile]:
        try:
            async with self.session_factory() as session:
                return await session.get(Profile, profile_id)
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to load profile",
                context={"profile_id": profile_id},
                original_exception=e
            )

    async def advance_last_checked(self, profile_id: int, checked_at: datetime) -> bool:
        """
        Move last_checked forward to checked_at.

        Returns:
            False when the stored value is already at or past checked_at
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Profile)
                    .where(
                        Profile.id == profile_id,
                        or_(Profile.last_checked.is_(None), Profile.last_checked < checked_at)
                    )
                    .values(last_checked=checked_at, updated_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to advance last_checked",
                context={"profile_id": profile_id, "checked_at": checked_at.isoformat()},
                original_exception=e
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Fetch log
    # ------------------------------------------------------------------

    async def ensure_pending(self, profile_id: int, cycle_date: date) -> Tuple[FetchLogEntry, bool]:
        """
        Create the PENDING entry for (profile, cycle_date) unless one exists.

        Returns:
            (entry, created)
        """
        now = self.clock()
        try:
            async with self.session_factory() as session:
                stmt = upsert_insert(session, FetchLogEntry).values(
                    profile_id=profile_id,
                    cycle_date=cycle_date,
                    status=FetchStatus.PENDING,
                    retry_count=0,
                    items_written=0,
                    created_at=now,
                    updated_at=now
                ).on_conflict_do_nothing(index_elements=["profile_id", "cycle_date"])
                result = await session.execute(stmt)
                await session.commit()
                created = result.rowcount == 1

                entry = (await session.execute(
                    select(FetchLogEntry).where(
                        FetchLogEntry.profile_id == profile_id,
                        FetchLogEntry.cycle_date == cycle_date
                    )
                )).scalar_one()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to create fetch log entry",
                context={"profile_id": profile_id, "cycle_date": cycle_date.isoformat()},
                original_exception=e
            )
        return entry, created

    async def mark_published(self, entry_id: int, published_at: Optional[datetime] = None) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    update(FetchLogEntry)
                    .where(FetchLogEntry.id == entry_id, FetchLogEntry.published_at.is_(None))
                    .values(published_at=published_at or self.clock())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to mark fetch log entry published",
                context={"entry_id": entry_id},
                original_exception=e
            )

    async def get_entry(self, profile_id: int, cycle_date: date) -> Optional[FetchLogEntry]:
        try:
            async with self.session_factory() as session:
                return (await session.execute(
                    select(FetchLogEntry).where(
                        FetchLogEntry.profile_id == profile_id,
                        FetchLogEntry.cycle_date == cycle_date
                    )
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to load fetch log entry",
                context={"profile_id": profile_id, "cycle_date": cycle_date.isoformat()},
                original_exception=e
            )

    async def upsert_fetch_log(
        self,
        profile_id: int,
        cycle_date: date,
        status: FetchStatus,
        retry_count: int,
        message: Optional[str] = None,
        items_written: int = 0
    ) -> bool:
        """
        Insert or advance the fetch log entry for (profile, cycle_date).

        An existing entry is only updated while it is PENDING and its stored
        retry count does not exceed retry_count.

        Returns:
            True if the write was applied
        """
        now = self.clock()
        try:
            async with self.session_factory() as session:
                stmt = upsert_insert(session, FetchLogEntry).values(
                    profile_id=profile_id,
                    cycle_date=cycle_date,
                    status=status,
                    retry_count=retry_count,
                    message=message,
                    items_written=items_written,
                    completed_at=now if status.is_terminal else None,
                    created_at=now,
                    updated_at=now
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["profile_id", "cycle_date"],
                    set_={
                        "status": stmt.excluded.status,
                        "retry_count": stmt.excluded.retry_count,
                        "message": stmt.excluded.message,
                        "items_written": stmt.excluded.items_written,
                        "completed_at": stmt.excluded.completed_at,
                        "updated_at": stmt.excluded.updated_at,
                    },
                    where=and_(
                        FetchLogEntry.status == FetchStatus.PENDING,
                        FetchLogEntry.retry_count <= stmt.excluded.retry_count
                    )
                )
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise WatermarkStoreError(
                "Failed to write fetch log entry",
                context={
                    "profile_id": profile_id,
                    "cycle_date": cycle_date.isoformat(),
                    "status": status.value
                },
                original_exception=e
            )

        applied = result.rowcount == 1
        if not applied:
            logger.info(
                f"Fetch log for profile {profile_id} on {cycle_date} already settled; "
                f"ignored transition to {status.value}"
            )
        return applied

    async def record_retry(self, profile_id: int, cycle_date: date, retry_count: int, message: str) -> bool:
        """Persist a failed attempt that will be retried; the entry stays PENDING"""
        return await self.upsert_fetch_log(
            profile_id, cycle_date, FetchStatus.PENDING, retry_count, message
        )

    async def finalize(
        self,
        profile_id: int,
        cycle_date: date,
        status: FetchStatus,
        retry_count: int,
        message: Optional[str] = None,
        items_written: int = 0
    ) -> bool:
        """Move the entry to a terminal status"""
        if not status.is_terminal:
            raise ValueError(f"finalize requires a terminal status, got {status.value}")
        return await self.upsert_fetch_log(
            profile_id, cycle_date, status, retry_count, message, items_written
        )
