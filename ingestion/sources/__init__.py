"""
Source adapters, one per supported platform.

The set is closed: a Source row whose name has no adapter class is a
configuration error surfaced when that source's work is processed.
"""

from typing import Dict, Iterable, Type
import httpx
from core.config import Settings, settings as default_settings
from ingestion.sources.base import SourceAdapter, HttpSourceAdapter
from ingestion.sources.instagram import InstagramAdapter
from ingestion.sources.facebook import FacebookAdapter
from ingestion.sources.tiktok import TikTokAdapter
from models.source import Source
import logging

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: Dict[str, Type[HttpSourceAdapter]] = {
    InstagramAdapter.name: InstagramAdapter,
    FacebookAdapter.name: FacebookAdapter,
    TikTokAdapter.name: TikTokAdapter,
}

_TOKEN_SETTINGS = {
    "instagram": "INSTAGRAM_ACCESS_TOKEN",
    "facebook": "FACEBOOK_ACCESS_TOKEN",
    "tiktok": "TIKTOK_ACCESS_TOKEN",
}


def build_adapters(
    sources: Iterable[Source],
    client: httpx.AsyncClient,
    settings: Settings = default_settings
) -> Dict[str, SourceAdapter]:
    """
    Resolve one adapter per known Source row.

    Args:
        sources: Source reference rows (endpoint overrides the default base URL)
        client: Shared HTTP client
        settings: Credentials and pagination bound

    Returns:
        Adapters keyed by source name
    """
    adapters: Dict[str, SourceAdapter] = {}
    for source in sources:
        adapter_class = ADAPTER_CLASSES.get(source.name)
        if adapter_class is None:
            logger.warning(f"No adapter for source '{source.name}'; its work items will be dead-lettered")
            continue

        token = getattr(settings, _TOKEN_SETTINGS[source.name])
        if not token:
            logger.warning(f"No access token configured for {source.name}")

        adapters[source.name] = adapter_class(
            client,
            base_url=source.endpoint or adapter_class.default_base_url,
            access_token=token,
            max_pages=settings.SOURCE_MAX_PAGES
        )
    logger.info(f"Source adapters ready: {', '.join(sorted(adapters)) or 'none'}")
    return adapters


__all__ = [
    "SourceAdapter",
    "HttpSourceAdapter",
    "InstagramAdapter",
    "FacebookAdapter",
    "TikTokAdapter",
    "ADAPTER_CLASSES",
    "build_adapters",
]
