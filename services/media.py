"""Media storage for synthesized prompts and call recordings.

Files are written under MEDIA_DIR and served by the app at /media (see
main.py), so the provider can fetch them by URL.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from pathlib import Path

from loguru import logger

from config import settings

_SAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe(part: str) -> str:
    return _SAFE.sub("_", part).strip("._") or "_"


def media_path(folder: str, name: str) -> Path:
    parts = [_safe(p) for p in folder.split("/") if p]
    return Path(settings.media_dir).joinpath(*parts, _safe(name))


def media_url(folder: str, name: str) -> str:
    parts = [_safe(p) for p in folder.split("/") if p]
    return "/".join([settings.media_base_url, *parts, _safe(name)])


async def store_media(data: bytes, folder: str, ext: str, name: str | None = None) -> str:
    """Write `data` to media storage and return its public URL."""
    filename = f"{name or uuid.uuid4().hex}.{ext.lstrip('.')}"
    path = media_path(folder, filename)

    def _write():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    await asyncio.to_thread(_write)
    logger.debug("Stored {n} bytes at {path}", n=len(data), path=str(path))
    return media_url(folder, filename)
