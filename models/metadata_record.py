from sqlalchemy import Column, BigInteger, Integer, String, Text, DateTime, ForeignKey, Index
from models.base import Base, IdType, JSONType, utcnow


class MetadataRecord(Base):
    """
    One normalized post from a source for a profile.

    Keyed by (profile_id, post_id). Re-ingesting the same post overwrites
    the mutable fields (caption, counters, raw_path) in place; the counters
    are snapshots as of ingested_at, not live values.

    Field Mapping Strategy:

    instagram:
    - id -> post_id
    - caption -> caption
    - like_count / comments_count -> like_count / comment_count
    - permalink -> url
    - timestamp -> created_time

    facebook:
    - id -> post_id
    - message -> caption
    - reactions.summary.total_count -> like_count
    - comments.summary.total_count -> comment_count
    - permalink_url -> url
    - created_time -> created_time

    tiktok:
    - id -> post_id
    - video_description -> caption
    - like_count / comment_count -> like_count / comment_count
    - share_url -> url
    - create_time (epoch) -> created_time
    """
    __tablename__ = "metadata_records"

    id = Column(IdType, primary_key=True, autoincrement=True)

    profile_id = Column(IdType, ForeignKey("profiles.id"), nullable=False, index=True)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False, index=True)
    post_id = Column(String(255), nullable=False)

    url = Column(String(2048), nullable=True)
    caption = Column(Text, nullable=True)
    like_count = Column(BigInteger, nullable=True)
    comment_count = Column(BigInteger, nullable=True)
    created_time = Column(DateTime, nullable=True, index=True)

    # Pointer into the raw archive
    raw_path = Column(String(1024), nullable=True)
    extra_metadata = Column("metadata", JSONType, nullable=True)

    ingested_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_metadata_profile_post", "profile_id", "post_id", unique=True),
    )
