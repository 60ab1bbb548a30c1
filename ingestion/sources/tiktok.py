"""
TikTok Research API adapter.

Unlike the Graph API sources, TikTok reports most failures in the body
({"error": {"code": ..., "message": ...}}) alongside a 200 or 4xx status,
so the body code is mapped before the items are read.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from core.exceptions import AuthError, InvalidRequestError, NotFoundError, RateLimitedError
from ingestion.sources.base import HttpSourceAdapter, parse_timestamp
from models.base import utcnow
from schemas.normalized import RawItem
import logging

logger = logging.getLogger(__name__)

VIDEO_FIELDS = (
    "id,create_time,username,region_code,video_description,like_count,"
    "comment_count,share_count,view_count,duration"
)

# The query endpoint rejects windows longer than this
MAX_WINDOW_DAYS = 30

_AUTH_CODES = {"access_token_invalid", "access_token_expired", "scope_not_authorized"}
_NOT_FOUND_CODES = {"user_not_found", "user_private"}


class TikTokAdapter(HttpSourceAdapter):
    """
    Queries POST /v2/research/video/query/ filtered by username.

    Field mapping:
    - video_description -> caption
    - create_time (epoch seconds) -> created_time
    - share url is built from username and id
    """

    name = "tiktok"
    default_base_url = "https://open.tiktokapis.com"

    def __init__(self, *args, clock=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.clock = clock or utcnow

    async def fetch(self, handle: str, since: Optional[datetime] = None) -> List[RawItem]:
        url = f"{self.base_url}/v2/research/video/query/"
        end = self.clock()
        start = since or (end - timedelta(days=MAX_WINDOW_DAYS))
        if (end - start).days >= MAX_WINDOW_DAYS:
            start = end - timedelta(days=MAX_WINDOW_DAYS - 1)

        query: Dict[str, Any] = {
            "query": {"and": [{"operation": "EQ", "field_name": "username", "field_values": [handle]}]},
            "start_date": start.strftime("%Y%m%d"),
            "end_date": end.strftime("%Y%m%d"),
            "max_count": 100,
        }

        items: List[RawItem] = []
        for _ in range(self.max_pages):
            body = await self._request_json(
                "POST", url, handle, params={"fields": VIDEO_FIELDS}, json=query
            )
            self._raise_for_error_body(handle, url, body)

            data = body.get("data")
            videos = data.get("videos") if isinstance(data, dict) else None
            if not isinstance(videos, list):
                raise self._malformed(handle, url, "missing 'data.videos' list")

            for record in videos:
                if not isinstance(record, dict) or "id" not in record:
                    raise self._malformed(handle, url, "video entry without id")
                created = parse_timestamp(record.get("create_time"))
                if since is not None and created is not None and created < since:
                    continue
                username = record.get("username") or handle
                items.append(self._raw_item(
                    handle,
                    url,
                    post_id=record["id"],
                    url=f"https://www.tiktok.com/@{username}/video/{record['id']}",
                    caption=record.get("video_description"),
                    like_count=record.get("like_count"),
                    comment_count=record.get("comment_count"),
                    created_time=created,
                    raw_json=record,
                ))

            if not data.get("has_more"):
                break
            query["cursor"] = data.get("cursor")
            query["search_id"] = data.get("search_id")
        else:
            logger.warning(f"TikTok fetch for {handle} stopped at {self.max_pages} pages")

        logger.info(f"Fetched {len(items)} TikTok items for {handle}")
        return items

    def _raise_for_error_body(self, handle: str, url: str, body: Dict[str, Any]) -> None:
        error = body.get("error") or {}
        code = error.get("code")
        if not code or code == "ok":
            return

        context = self._context(handle, url, error_code=code, log_id=error.get("log_id"))
        message = error.get("message") or code
        if code in _AUTH_CODES:
            raise AuthError(f"TikTok authentication failed: {message}", context=context)
        if code in _NOT_FOUND_CODES:
            raise NotFoundError(f"TikTok user {handle} not available: {message}", context=context)
        if code == "rate_limit_exceeded":
            raise RateLimitedError(f"TikTok rate limit exceeded: {message}", context=context)
        raise InvalidRequestError(f"TikTok rejected the query: {message}", context=context)
