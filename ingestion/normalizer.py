"""
Normalize raw source items into validated metadata records
"""

from typing import Dict, Any, Optional
from pydantic import ValidationError
from core.exceptions import MalformedResponseError
from schemas.normalized import RawItem, MetadataRecordCreate
import logging

logger = logging.getLogger(__name__)

# Source fields kept in the record's metadata column, per source
EXTRA_FIELDS = {
    "instagram": ("media_type", "media_url", "thumbnail_url"),
    "facebook": ("shares", "status_type", "full_picture"),
    "tiktok": ("view_count", "share_count", "duration", "region_code"),
}


class MetadataNormalizer:
    """
    Normalize adapter output into the metadata record schema.

    Handles:
    - Counter coercion
    - Source-specific extras
    - Validation (failures become MalformedResponseError)
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    def normalize(
        self,
        raw_item: RawItem,
        profile_id: int,
        source_id: int,
        raw_path: Optional[str] = None
    ) -> MetadataRecordCreate:
        """
        Build a MetadataRecordCreate from one raw item.

        Returns:
            Validated MetadataRecordCreate Pydantic model
        """
        try:
            return MetadataRecordCreate(
                profile_id=profile_id,
                source_id=source_id,
                post_id=raw_item.post_id,
                url=raw_item.url,
                caption=raw_item.caption,
                like_count=self._parse_int(raw_item.like_count),
                comment_count=self._parse_int(raw_item.comment_count),
                created_time=raw_item.created_time,
                raw_path=raw_path,
                extra_metadata=self._extras(raw_item.raw_json),
            )
        except ValidationError as e:
            raise MalformedResponseError(
                f"Item {raw_item.post_id} failed validation",
                context={
                    "source_name": self.source_name,
                    "profile_id": profile_id,
                    "post_id": raw_item.post_id,
                    "errors": e.error_count()
                },
                original_exception=e
            )

    def _extras(self, raw_json: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: raw_json[key]
            for key in EXTRA_FIELDS.get(self.source_name, ())
            if raw_json.get(key) is not None
        }

    @staticmethod
    def _parse_int(value: Any) -> Optional[int]:
        """Safely parse int value"""
        if value is None or value == "":
            return None
        try:
            return int(float(value))  # Handle "10.0" strings
        except (ValueError, TypeError):
            return None
