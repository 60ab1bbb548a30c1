"""
Source adapter interface and the shared HTTP plumbing.

Adapters make exactly one attempt per fetch and translate every failure
into the error taxonomy; retry and backoff belong to the retry manager,
which persists its state in the fetch log.
"""

import httpx
from pydantic import ValidationError
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from core.exceptions import (
    AuthError,
    InvalidRequestError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    TransientSourceError,
)
from schemas.normalized import RawItem
import logging

logger = logging.getLogger(__name__)


class SourceAdapter(ABC):
    """
    One external data source behind a single capability: fetch().

    Attributes:
        name: Source name as stored in the sources table
    """

    name: str = ""

    @abstractmethod
    async def fetch(self, handle: str, since: Optional[datetime] = None) -> List[RawItem]:
        """
        Fetch items posted by a profile.

        Args:
            handle: Profile handle / identifier on the source
            since: Only items created at or after this naive UTC time

        Returns:
            Zero or more raw items

        Raises:
            SourceError subclasses
        """
        pass


class HttpSourceAdapter(SourceAdapter):
    """
    Base for JSON-over-HTTP sources.

    Features:
    - Bearer token authentication
    - HTTP status mapping onto the error taxonomy
    - Bounded pagination (max_pages)
    """

    default_base_url: str = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        access_token: Optional[str] = None,
        max_pages: int = 10
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.max_pages = max_pages

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _context(self, handle: str, url: str, **extra) -> Dict[str, Any]:
        return {"source_name": self.name, "handle": handle, "api_url": url, **extra}

    async def _request_json(
        self,
        method: str,
        url: str,
        handle: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Perform one request and return the decoded JSON object.

        Raises:
            AuthError: 401, 403
            NotFoundError: 404
            RateLimitedError: 429 (retry_after from the Retry-After header)
            TransientSourceError: 5xx, timeouts, connection failures
            InvalidRequestError: any other 4xx
            MalformedResponseError: body is not a JSON object
        """
        try:
            response = await self.client.request(
                method, url, params=params, json=json, headers=self._headers()
            )
        except httpx.TimeoutException as e:
            raise TransientSourceError(
                f"Request to {self.name} timed out",
                context=self._context(handle, url),
                original_exception=e
            )
        except httpx.TransportError as e:
            raise TransientSourceError(
                f"Network error talking to {self.name}",
                context=self._context(handle, url),
                original_exception=e
            )

        status = response.status_code
        if status in (401, 403):
            raise AuthError(
                f"Authentication failed for {self.name}",
                context=self._context(handle, url, status_code=status)
            )
        if status == 404:
            raise NotFoundError(
                f"Profile {handle} not found on {self.name}",
                context=self._context(handle, url, status_code=status)
            )
        if status == 429:
            raise RateLimitedError(
                f"Rate limit exceeded for {self.name}",
                context=self._context(handle, url, status_code=status),
                retry_after=self._retry_after(response)
            )
        if status >= 500:
            raise TransientSourceError(
                f"{self.name} returned server error {status}",
                context=self._context(handle, url, status_code=status, response_body=response.text[:500])
            )
        if status >= 400:
            raise InvalidRequestError(
                f"{self.name} rejected the request with {status}",
                context=self._context(handle, url, status_code=status, response_body=response.text[:500])
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.name} returned a non-JSON body",
                context=self._context(handle, url, status_code=status),
                original_exception=e
            )
        if not isinstance(body, dict):
            raise MalformedResponseError(
                f"{self.name} returned {type(body).__name__} instead of an object",
                context=self._context(handle, url, status_code=status)
            )
        return body

    @staticmethod
    def _retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    def _raw_item(self, handle: str, request_url: str, **fields) -> RawItem:
        try:
            return RawItem(**fields)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Invalid {self.name} item",
                context=self._context(handle, request_url, errors=e.error_count()),
                original_exception=e
            )

    def _malformed(self, handle: str, url: str, detail: str) -> MalformedResponseError:
        return MalformedResponseError(
            f"Unexpected {self.name} response shape: {detail}",
            context=self._context(handle, url)
        )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse source timestamps into naive UTC.

    Accepts ISO-8601 (with Z or +0000 style offsets) and unix epoch seconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        # Graph API style "+0000" offsets
        if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_epoch(value: datetime) -> int:
    """Unix seconds for a naive UTC (or aware) datetime"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())
