"""
Raw archive sink: untouched source payloads stored by deterministic path.

Path scheme: rawdata/{source}/{yyyy-mm-dd}/{entityID}_{postID}.json

The same item on the same day always maps to the same path, so a
redelivered work item overwrites its earlier copy instead of adding one.
"""

import asyncio
import json
import os
import re
import uuid
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Dict

from core.exceptions import ArchiveWriteError
import logging

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def archive_path(source_name: str, cycle_date: date, entity_id: int, post_id: str) -> str:
    """Deterministic archive key for one raw item"""
    safe_post_id = _UNSAFE_CHARS.sub("_", str(post_id))
    return f"rawdata/{source_name}/{cycle_date.isoformat()}/{entity_id}_{safe_post_id}.json"


def encode_payload(raw_json: Dict[str, Any]) -> bytes:
    return json.dumps(raw_json, sort_keys=True, default=str).encode("utf-8")


class RawArchiveSink(ABC):
    """Blob store keyed by path"""

    @abstractmethod
    async def put(self, path: str, data: bytes) -> None:
        """Write data at path, replacing anything already there"""
        pass

    @abstractmethod
    async def get(self, path: str) -> bytes:
        pass


class LocalRawArchive(RawArchiveSink):
    """Filesystem-backed archive rooted at a directory"""

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ArchiveWriteError(
                "Archive path escapes the archive root",
                context={"operation": "PUT", "path": path}
            )
        return target

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise ArchiveWriteError(
                "Failed to write raw payload",
                context={"operation": "PUT", "path": path},
                original_exception=e
            )
        logger.debug(f"Archived {len(data)} bytes at {path}")

    async def get(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never see a half-written file
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()
