#!/usr/bin/env python3

"""
retention.py

Purges a mailbox's data older than its config's retention window.

Retention is keyed on backup time, not on the mail's own dates. Remote objects
go first and are best-effort; metadata rows are deleted even when some remote
deletes failed.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mailvault import db
from mailvault.errors import StorageError
from mailvault.logger import get_logger
from mailvault.models import ScheduleConfig
from mailvault.storage import ObjectStore
from mailvault.utils import utcnow


@dataclass
class RetentionResult:
    cutoff: datetime.datetime
    jobs_deleted: int = 0
    messages_deleted: int = 0
    objects_deleted: int = 0
    objects_failed: int = 0


def retention_cutoff(retention_days: int, now: Optional[datetime.datetime] = None) -> datetime.datetime:
    return (now or utcnow()) - datetime.timedelta(days=retention_days)


async def enforce_retention(config: ScheduleConfig, storage: ObjectStore, db_path: Path,
                            now: Optional[datetime.datetime] = None) -> RetentionResult:
    """
    Delete jobs created before the cutoff, then the stored objects and records of
    messages backed up before it. A record exactly at the cutoff is kept.
    """
    logger = get_logger(__name__)
    result = RetentionResult(cutoff=retention_cutoff(config.retention_days, now))
    mailbox = config.mailbox

    result.jobs_deleted = await asyncio.to_thread(db.delete_jobs_older_than, db_path, mailbox, result.cutoff)

    old = await asyncio.to_thread(db.fetch_messages_older_than, db_path, mailbox, result.cutoff)
    attachments = await asyncio.to_thread(
        db.fetch_attachments_for_messages, db_path, [r.id for r in old if r.id is not None]
    )
    keys = [a.storage_key for a in attachments] + [r.storage_key for r in old]
    for key in keys:
        if not key:
            continue
        try:
            await storage.delete(key)
            result.objects_deleted += 1
        except StorageError as e:
            result.objects_failed += 1
            logger.error(f"Failed to delete old backup object {key}: {e}")

    result.messages_deleted = await asyncio.to_thread(db.delete_messages_older_than, db_path, mailbox, result.cutoff)
    logger.info(
        f"Retention for {mailbox}: removed {result.jobs_deleted} job(s), {result.messages_deleted} message(s), "
        f"{result.objects_deleted} object(s) older than {config.retention_days} days"
    )
    return result
