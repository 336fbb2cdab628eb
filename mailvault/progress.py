#!/usr/bin/env python3

"""
progress.py

In-memory progress of backup jobs and periodic status reporting.

BackupProgress lives only while the process does; the JobManager snapshots its
counters onto the job row so they can be recovered after a restart.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Callable, Iterable, List, Optional

from mailvault.logger import get_logger
from mailvault.models import BackupJob, JobStatus


@dataclass
class BackupProgress:
    job_id: str
    mailbox: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    current_folder: Optional[str] = None
    processed_emails: int = 0
    total_emails: int = 0
    failed_emails: int = 0
    processed_bytes: int = 0
    errors: List[str] = field(default_factory=list)

    def mark_processed(self) -> None:
        """Count one more handled message and recompute the percentage."""
        self.processed_emails += 1
        self.update_percent()

    def mark_failed(self, error: str) -> None:
        self.failed_emails += 1
        self.errors.append(error)

    def update_percent(self) -> None:
        if self.total_emails <= 0:
            return
        # half-up rounding; capped since a folder can grow between pre-pass and walk
        pct = int(self.processed_emails * 100 / self.total_emails + 0.5)
        self.progress = max(self.progress, min(100, pct))

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    def format_status(self) -> str:
        folder = f" | Folder: {self.current_folder}" if self.current_folder else ""
        return (
            f"[{self.job_id[:8]}] {self.mailbox} | {self.status.value} {self.progress}% | "
            f"Processed: {self.processed_emails}/{self.total_emails} | Failed: {self.failed_emails} | "
            f"Bytes: {self.processed_bytes}{folder}"
        )

    @classmethod
    def from_job(cls, job: BackupJob) -> "BackupProgress":
        """Rebuild a progress view from a persisted job snapshot."""
        p = cls(
            job_id=job.id,
            mailbox=job.mailbox,
            status=job.status,
            current_folder=job.current_folder,
            processed_emails=job.processed_emails,
            total_emails=job.total_emails,
            failed_emails=job.failed_emails,
            processed_bytes=job.processed_bytes,
            errors=[job.error_message] if job.error_message else [],
        )
        if job.status is JobStatus.COMPLETED:
            p.progress = 100
        else:
            p.update_percent()
        return p


class StatusReporter:
    """
    Background task for periodic status reporting.

    Every `interval` seconds logs one STATUS line per active job.
    """

    def __init__(self, interval: int, source: Callable[[], Iterable[BackupProgress]]):
        self.logger = get_logger(__name__)
        self.interval = interval
        self.source = source
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="StatusReporter")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.report()

    def report(self) -> None:
        # logger.status is registered at runtime by setup_logger
        fn = getattr(self.logger, "status", None)
        for p in self.source():
            line = p.format_status()
            if callable(fn):
                fn(line)
            else:
                self.logger.info("[STATUS] " + line)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
