"""
Structured sink: idempotent upserts of normalized metadata records
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.database import upsert_insert
from core.exceptions import UpsertError
from models.base import utcnow
from models.metadata_record import MetadataRecord
from schemas.normalized import MetadataRecordCreate
import logging

logger = logging.getLogger(__name__)

# Columns overwritten when the same (profile_id, post_id) is ingested again
MUTABLE_COLUMNS = (
    "url",
    "caption",
    "like_count",
    "comment_count",
    "created_time",
    "raw_path",
    "metadata",
)


class StructuredSink:
    """
    Relational store for metadata records.

    Ensures:
    - One row per (profile_id, post_id) no matter how often it is re-ingested
    - Last write wins on mutable fields
    - Each write is a single INSERT .. ON CONFLICT statement
    """

    def __init__(self, session_factory: async_sessionmaker, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def upsert_metadata(self, profile_id: int, post_id: str, fields: Dict[str, Any]) -> None:
        """
        Insert or overwrite the record keyed by (profile_id, post_id).

        Args:
            profile_id: Owning profile
            post_id: Source-native item id
            fields: Column values; must include source_id
        """
        now = self.clock()
        values = {
            "profile_id": profile_id,
            "post_id": post_id,
            "ingested_at": now,
            "updated_at": now,
            **fields,
        }

        try:
            async with self.session_factory() as session:
                stmt = upsert_insert(session, MetadataRecord.__table__).values(**values)
                set_ = {name: stmt.excluded[name] for name in MUTABLE_COLUMNS if name in values}
                set_["ingested_at"] = stmt.excluded["ingested_at"]
                set_["updated_at"] = stmt.excluded["updated_at"]
                stmt = stmt.on_conflict_do_update(
                    index_elements=["profile_id", "post_id"],
                    set_=set_
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            raise UpsertError(
                "Failed to upsert metadata record",
                context={"operation": "UPSERT", "profile_id": profile_id, "post_id": post_id},
                original_exception=e
            )

        logger.debug(f"Upserted metadata record profile={profile_id} post={post_id}")

    async def upsert_record(self, record: MetadataRecordCreate) -> None:
        """Upsert a validated record"""
        fields = {"source_id": record.source_id, **record.mutable_fields()}
        await self.upsert_metadata(record.profile_id, record.post_id, fields)

    async def get_metadata(self, profile_id: int, post_id: str) -> Optional[MetadataRecord]:
        async with self.session_factory() as session:
            return (await session.execute(
                select(MetadataRecord).where(
                    MetadataRecord.profile_id == profile_id,
                    MetadataRecord.post_id == post_id
                )
            )).scalar_one_or_none()

    async def list_for_profile(self, profile_id: int, since: Optional[datetime] = None) -> List[MetadataRecord]:
        query = select(MetadataRecord).where(MetadataRecord.profile_id == profile_id)
        if since is not None:
            query = query.where(MetadataRecord.ingested_at >= since)
        async with self.session_factory() as session:
            return list((await session.execute(query.order_by(MetadataRecord.id))).scalars())

    async def count_for_profile(self, profile_id: int) -> int:
        async with self.session_factory() as session:
            return (await session.execute(
                select(func.count(MetadataRecord.id)).where(MetadataRecord.profile_id == profile_id)
            )).scalar_one()
