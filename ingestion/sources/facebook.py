"""
Facebook Pages Graph API adapter
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from ingestion.sources.base import HttpSourceAdapter, parse_timestamp, to_epoch
from schemas.normalized import RawItem
import logging

logger = logging.getLogger(__name__)

POST_FIELDS = (
    "id,message,permalink_url,created_time,status_type,full_picture,shares,"
    "reactions.summary(total_count).limit(0),comments.summary(total_count).limit(0)"
)


def _summary_count(record: Dict[str, Any], edge: str) -> Optional[int]:
    return ((record.get(edge) or {}).get("summary") or {}).get("total_count")


class FacebookAdapter(HttpSourceAdapter):
    """
    Reads /{page-id}/posts with reaction and comment summaries.

    Field mapping:
    - message -> caption
    - permalink_url -> url
    - reactions.summary.total_count -> like_count
    - comments.summary.total_count -> comment_count
    - shares.count -> shares (metadata)
    """

    name = "facebook"
    default_base_url = "https://graph.facebook.com/v19.0"

    async def fetch(self, handle: str, since: Optional[datetime] = None) -> List[RawItem]:
        url = f"{self.base_url}/{handle}/posts"
        params = {"fields": POST_FIELDS, "limit": 50}
        if since is not None:
            params["since"] = to_epoch(since)

        items: List[RawItem] = []
        for _ in range(self.max_pages):
            body = await self._request_json("GET", url, handle, params=params)
            data = body.get("data")
            if not isinstance(data, list):
                raise self._malformed(handle, url, "missing 'data' list")

            for record in data:
                if not isinstance(record, dict) or "id" not in record:
                    raise self._malformed(handle, url, "post entry without id")
                raw_json = dict(record)
                if isinstance(record.get("shares"), dict):
                    raw_json["shares"] = record["shares"].get("count")
                items.append(self._raw_item(
                    handle,
                    url,
                    post_id=record["id"],
                    url=record.get("permalink_url"),
                    caption=record.get("message"),
                    like_count=_summary_count(record, "reactions"),
                    comment_count=_summary_count(record, "comments"),
                    created_time=parse_timestamp(record.get("created_time")),
                    raw_json=raw_json,
                ))

            next_url = (body.get("paging") or {}).get("next")
            if not next_url:
                break
            url, params = next_url, None
        else:
            logger.warning(f"Facebook fetch for {handle} stopped at {self.max_pages} pages")

        logger.info(f"Fetched {len(items)} Facebook items for {handle}")
        return items
