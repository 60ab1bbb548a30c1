"""
Pydantic schemas for raw source items and normalized metadata records
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class RawItem(BaseModel):
    """
    One item as returned by a source adapter.

    raw_json is the untouched source payload; it is what gets archived.
    """
    post_id: str = Field(..., min_length=1, max_length=255)
    url: Optional[str] = None
    caption: Optional[str] = None
    like_count: Optional[int] = None
    comment_count: Optional[int] = None
    created_time: Optional[datetime] = None
    raw_json: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("post_id", mode="before")
    @classmethod
    def coerce_post_id(cls, v):
        """Sources return numeric or string ids"""
        if v is None:
            return v
        return str(v).strip()


class MetadataRecordCreate(BaseModel):
    """
    Schema for upserting metadata records with validation.

    Ensures:
    - Identity fields are present
    - Counters are non-negative
    - Caption is cleaned
    """

    # Identity (required)
    profile_id: int
    source_id: int
    post_id: str = Field(..., min_length=1, max_length=255)

    # Mutable fields
    url: Optional[str] = Field(None, max_length=2048)
    caption: Optional[str] = None
    like_count: Optional[int] = Field(None, ge=0)
    comment_count: Optional[int] = Field(None, ge=0)
    created_time: Optional[datetime] = None

    raw_path: Optional[str] = Field(None, max_length=1024)
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(str_strip_whitespace=True)

    @field_validator("caption")
    @classmethod
    def clean_caption(cls, v):
        """Empty captions are stored as NULL"""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("created_time")
    @classmethod
    def naive_utc(cls, v):
        """Store timestamps as naive UTC like every other column"""
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def mutable_fields(self) -> Dict[str, Any]:
        """Column values overwritten on re-ingest (last write wins)"""
        return {
            "url": self.url,
            "caption": self.caption,
            "like_count": self.like_count,
            "comment_count": self.comment_count,
            "created_time": self.created_time,
            "raw_path": self.raw_path,
            "metadata": self.extra_metadata,
        }
