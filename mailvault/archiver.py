#!/usr/bin/env python3

"""
archiver.py

Daily archive of one scheduled run.

Downloads every object recorded in the run's window into a transient file,
appends it to a ZIP (deflate, level 9) and removes the transient copy right away,
so at most one object sits on local disk besides the archive itself. The finished
archive is uploaded to <mailbox>/daily-zips/<date>/<mailbox>_<date>.zip.

Also owns housekeeping of the local temp directory.
"""

from __future__ import annotations

import asyncio
import datetime
import time
import zipfile
from pathlib import Path
from typing import List, Optional, Set

from mailvault import db
from mailvault.config import Settings
from mailvault.errors import StorageError
from mailvault.logger import get_logger
from mailvault.models import ScheduleConfig
from mailvault.storage import ObjectStore
from mailvault.utils import ensure_dirs, sanitize

TEMP_MAX_AGE = 24 * 60 * 60


def archive_key(mailbox: str, day: datetime.date) -> str:
    d = day.isoformat()
    return f"{mailbox}/daily-zips/{d}/{mailbox}_{d}.zip"


class Archiver:
    def __init__(self, settings: Settings, storage: ObjectStore):
        self.settings = settings
        self.db_path = settings.db_path
        self.storage = storage
        self.work_dir: Path = settings.archive_tmp_dir
        self.logger = get_logger(__name__)

    async def create_daily_archive(self, config: ScheduleConfig, start: datetime.datetime,
                                   end: datetime.datetime) -> str:
        """
        Bundle the window's messages (and attachments when the config includes them)
        and upload the archive. Returns the storage key of the archive.

        A record that cannot be added is logged and left out; upload failures raise.
        """
        day = end.astimezone(datetime.timezone.utc).date()
        key = archive_key(config.mailbox, day)
        ensure_dirs(self.work_dir)
        zip_path = self.work_dir / f"{sanitize(config.mailbox)}_{day.isoformat()}.zip"

        records = await asyncio.to_thread(db.fetch_messages_in_window, self.db_path, config.mailbox, start, end)
        added = 0
        try:
            with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                names: Set[str] = set()
                for record in records:
                    if await self._add_object(zf, names, record.storage_key, f"{sanitize(record.message_id)}.eml"):
                        added += 1

                if config.include_attachments and records:
                    attachments = await asyncio.to_thread(
                        db.fetch_attachments_for_messages, self.db_path, [r.id for r in records if r.id is not None]
                    )
                    for att in attachments:
                        arcname = f"attachments/{sanitize(att.filename)}"
                        if arcname in names:
                            arcname = f"attachments/{sanitize(att.attachment_id)}_{sanitize(att.filename)}"
                        if await self._add_object(zf, names, att.storage_key, arcname):
                            added += 1

            data = await asyncio.to_thread(zip_path.read_bytes)
            await self.storage.put(key, data, "application/zip")
        finally:
            zip_path.unlink(missing_ok=True)

        self.logger.info(f"Daily archive uploaded: {key} ({added} entries, {len(records)} message record(s))")
        return key

    async def _add_object(self, zf: zipfile.ZipFile, names: Set[str], storage_key: str, arcname: str) -> bool:
        if not storage_key:
            return False
        transient = self.work_dir / f"{sanitize(Path(arcname).name)}.part"
        try:
            data = await self.storage.get(storage_key)
            await asyncio.to_thread(self._append, zf, transient, data, arcname)
        except (StorageError, OSError) as e:
            self.logger.error(f"Failed to add {storage_key} to archive: {e}")
            return False
        finally:
            transient.unlink(missing_ok=True)
        names.add(arcname)
        return True

    @staticmethod
    def _append(zf: zipfile.ZipFile, transient: Path, data: bytes, arcname: str) -> None:
        transient.write_bytes(data)
        zf.write(transient, arcname=arcname)

    def cleanup_temp_directory(self, tmp_dir: Optional[Path] = None, max_age: int = TEMP_MAX_AGE) -> List[Path]:
        """Remove files under the temp directory older than `max_age` seconds."""
        root = tmp_dir or self.settings.tmp_dir
        if not root.exists():
            return []
        cutoff = time.time() - max_age
        removed: List[Path] = []
        for path in root.rglob("*"):
            try:
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path)
                    self.logger.info(f"Cleaned up temp file: {path.name}")
            except OSError as e:
                self.logger.error(f"Failed to clean up temp file {path}: {e}")
        return removed
