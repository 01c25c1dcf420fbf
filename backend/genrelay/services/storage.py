"""Media storage sink.

Files land under ``<base_dir>/<category>/<YYYY>/<MM>/<DD>/<base>.<ext>`` and
the returned locator is that relative path, servable under ``/media``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-z0-9_-]+")


def sanitize_token(value: str) -> str:
    """Lower-case and keep only ``[a-z0-9_-]``."""
    return _UNSAFE.sub("", (value or "").strip().lower())


@dataclass(frozen=True)
class SaveOptions:
    category: str = ""
    base_name: str = ""
    extension: str = ""
    skip_if_exists: bool = False


class Storage(Protocol):
    async def save(self, data: bytes, options: SaveOptions) -> str:
        """Persist ``data``; returns a storage locator."""
        ...


class LocalStorage:
    """Writes media to a local directory tree (the shared media volume)."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = base_dir

    def build_path(self, options: SaveOptions, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        category = sanitize_token(options.category) or "misc"
        base = sanitize_token(options.base_name) or str(time.time_ns())
        ext = sanitize_token(options.extension.lstrip(".")) or "bin"
        return "/".join((category, f"{now:%Y}", f"{now:%m}", f"{now:%d}", f"{base}.{ext}"))

    async def save(self, data: bytes, options: SaveOptions) -> str:
        if not data:
            raise ValueError("refusing to store empty payload")
        locator = self.build_path(options)
        full_path = os.path.join(self.base_dir, *locator.split("/"))

        if options.skip_if_exists and os.path.exists(full_path):
            logger.debug("Storage hit, skipping write: %s", locator)
            return locator

        await asyncio.to_thread(_write_file, full_path, data)
        logger.info("Stored %s (%d bytes)", locator, len(data))
        return locator


def _write_file(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp = f"{path}.part"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)
