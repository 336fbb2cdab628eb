#!/usr/bin/env python3

"""
storage.py

Object storage gateway.

Keys are plain relative paths ("user@example.com/emails/<folder>/<file>.eml");
the rclone implementation prefixes them with the configured remote. rclone is a
blocking subprocess, so every call is pushed onto a worker thread to keep the
event loop free.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import List, Optional, Protocol

from mailvault.errors import StorageError, StorageUploadError
from mailvault.logger import get_logger
from mailvault.models import StoredObject
from mailvault.rclone import rclone_cat, rclone_deletefile, rclone_lsjson, rclone_moveto, rclone_rcat


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> None: ...

    async def get(self, key: str) -> bytes: ...

    async def list(self, prefix: str) -> List[StoredObject]: ...

    async def delete(self, key: str) -> None: ...

    async def head(self, key: str) -> Optional[StoredObject]: ...


class RcloneObjectStore:
    """ObjectStore backed by any rclone remote (S3/IDrive e2, Nextcloud, local, ...)."""

    def __init__(self, remote: str):
        self.remote = remote.rstrip("/")
        self.logger = get_logger(__name__)

    def _path(self, key: str) -> str:
        return f"{self.remote}/{key.lstrip('/')}"

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        """
        Upload atomically: rcat to a temporary name, then moveto the final key.

        rclone infers the content type from the extension; `content_type` is only
        logged for diagnostics.
        """
        await asyncio.to_thread(self._put_sync, key, data, content_type)

    def _put_sync(self, key: str, data: bytes, content_type: str) -> None:
        final = self._path(key)
        tmp = f"{final}.tmp.{uuid.uuid4().hex}"
        res = rclone_rcat(tmp, data, check=False)
        if getattr(res, "returncode", 1) != 0:
            rclone_deletefile(tmp, check=False)
            raise StorageUploadError(f"rcat failed for {key}")
        res2 = rclone_moveto(tmp, final, check=False)
        if getattr(res2, "returncode", 1) != 0:
            rclone_deletefile(tmp, check=False)
            raise StorageUploadError(f"moveto failed for {key}")
        self.logger.debug(f"Stored {key} ({len(data)} bytes, {content_type})")

    async def get(self, key: str) -> bytes:
        res = await asyncio.to_thread(rclone_cat, self._path(key), check=False)
        if getattr(res, "returncode", 1) != 0:
            raise StorageError(f"Failed to download {key}")
        return res.stdout or b""

    async def list(self, prefix: str) -> List[StoredObject]:
        res = await asyncio.to_thread(
            rclone_lsjson, self._path(prefix), "--recursive", "--files-only", check=False
        )
        if getattr(res, "returncode", 1) != 0:
            raise StorageError(f"Failed to list {prefix}")
        base = prefix.strip("/")
        entries = json.loads(res.stdout or "[]")
        return [
            StoredObject(
                key=f"{base}/{e['Path']}" if base else e["Path"],
                size=int(e.get("Size", 0)),
                modified=e.get("ModTime"),
                content_type=e.get("MimeType"),
            )
            for e in entries
            if "Path" in e
        ]

    async def delete(self, key: str) -> None:
        res = await asyncio.to_thread(rclone_deletefile, self._path(key), check=False)
        if getattr(res, "returncode", 1) != 0:
            raise StorageError(f"Failed to delete {key}")

    async def head(self, key: str) -> Optional[StoredObject]:
        res = await asyncio.to_thread(rclone_lsjson, self._path(key), "--stat", check=False)
        if getattr(res, "returncode", 1) != 0:
            return None
        try:
            entry = json.loads(res.stdout or "null")
        except json.JSONDecodeError:
            return None
        if not entry:
            return None
        return StoredObject(
            key=key,
            size=int(entry.get("Size", 0)),
            modified=entry.get("ModTime"),
            content_type=entry.get("MimeType"),
        )
