"""
Instagram Graph API adapter
"""

from datetime import datetime
from typing import List, Optional
from ingestion.sources.base import HttpSourceAdapter, parse_timestamp, to_epoch
from schemas.normalized import RawItem
import logging

logger = logging.getLogger(__name__)

MEDIA_FIELDS = "id,caption,like_count,comments_count,permalink,timestamp,media_type,media_url,thumbnail_url"


class InstagramAdapter(HttpSourceAdapter):
    """
    Reads /{ig-user-id}/media, newest first, following paging.next.

    Field mapping:
    - id -> post_id
    - permalink -> url
    - comments_count -> comment_count
    - timestamp -> created_time
    """

    name = "instagram"
    default_base_url = "https://graph.facebook.com/v19.0"

    async def fetch(self, handle: str, since: Optional[datetime] = None) -> List[RawItem]:
        url = f"{self.base_url}/{handle}/media"
        params = {"fields": MEDIA_FIELDS, "limit": 50}
        if since is not None:
            params["since"] = to_epoch(since)

        items: List[RawItem] = []
        for _ in range(self.max_pages):
            body = await self._request_json("GET", url, handle, params=params)
            data = body.get("data")
            if not isinstance(data, list):
                raise self._malformed(handle, url, "missing 'data' list")

            reached_since = False
            for record in data:
                if not isinstance(record, dict) or "id" not in record:
                    raise self._malformed(handle, url, "media entry without id")
                created = parse_timestamp(record.get("timestamp"))
                if since is not None and created is not None and created < since:
                    reached_since = True
                    continue
                items.append(self._raw_item(
                    handle,
                    url,
                    post_id=record["id"],
                    url=record.get("permalink"),
                    caption=record.get("caption"),
                    like_count=record.get("like_count"),
                    comment_count=record.get("comments_count"),
                    created_time=created,
                    raw_json=record,
                ))

            next_url = (body.get("paging") or {}).get("next")
            if reached_since or not next_url:
                break
            # paging.next already carries every query parameter
            url, params = next_url, None
        else:
            logger.warning(f"Instagram fetch for {handle} stopped at {self.max_pages} pages")

        logger.info(f"Fetched {len(items)} Instagram items for {handle}")
        return items
