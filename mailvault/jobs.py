#!/usr/bin/env python3

"""
jobs.py

Backup job lifecycle and pipeline.

A job moves pending -> running -> completed | failed and is never resumed; a retry
is a new job. For each job the pipeline:
- lists and filters folders
- counts every selected folder's messages (pre-pass, no content fetched)
- walks folder by folder, message by message: dedup -> fetch/size gate -> upload -> record

Errors inside one message or one folder are collected on the progress and the
walk continues. Anything escaping those boundaries fails the job. Auth failures
and cancellation always escape.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from mailvault import db
from mailvault.cancellation import CancelToken, InterruptManager
from mailvault.config import Settings
from mailvault.enumerator import count_messages, iter_messages, select_folders
from mailvault.errors import JobAlreadyActiveError, JobCancelledError, ProviderAuthError, SizeLimitExceeded
from mailvault.fetcher import fetch_message_content, is_backed_up
from mailvault.graph import MailProvider
from mailvault.logger import get_logger, job_logger
from mailvault.models import BackupJob, BackupOptions, JobStatus, MailFolder, MailMessage
from mailvault.progress import BackupProgress
from mailvault.storage import ObjectStore
from mailvault.uploader import MessageUploader
from mailvault.utils import utcnow

# Errors that must end the job even when raised inside a per-item boundary
_FATAL = (ProviderAuthError, JobCancelledError)

RESTART_REASON = "Backup job interrupted by process restart"
SHUTDOWN_REASON = "Backup job interrupted by shutdown"


class JobManager:
    """
    Owns BackupJob rows, the in-memory progress table and the running pipelines.

    One instance per process, created at startup and handed to whoever needs it.
    """

    def __init__(self, settings: Settings, provider: MailProvider, storage: ObjectStore):
        self.settings = settings
        self.db_path: Path = settings.db_path
        self.provider = provider
        self.storage = storage
        self.uploader = MessageUploader(storage, provider, self.db_path, settings.max_attachment_size)
        self.interrupts = InterruptManager()
        self.logger = get_logger(__name__)

        self._progress: Dict[str, BackupProgress] = {}
        self._finished: List[str] = []
        self._tasks: Dict[str, asyncio.Task] = {}
        self._completion: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start_backup(self, options: BackupOptions) -> str:
        """
        Create a pending job, register its progress and launch the pipeline.

        Returns the job id without waiting for the pipeline.
        """
        job = BackupJob(
            id=uuid.uuid4().hex,
            mailbox=options.mailbox,
            kind=options.kind,
            status=JobStatus.PENDING,
            start_date=options.start_date,
            end_date=options.end_date or utcnow(),
            created_at=utcnow(),
        )
        await asyncio.to_thread(db.insert_job, self.db_path, job)

        progress = BackupProgress(job_id=job.id, mailbox=job.mailbox)
        self._progress[job.id] = progress
        self._completion[job.id] = asyncio.get_running_loop().create_future()
        token = self.interrupts.register(job.id)

        self._tasks[job.id] = asyncio.create_task(
            self._run(job.id, options, progress, token), name=f"backup-{job.id[:8]}"
        )
        self.logger.info(f"Backup job {job.id} created for {job.mailbox} ({job.kind.value})")
        return job.id

    async def start_manual_backup(self, options: BackupOptions) -> str:
        """
        Operator-initiated start.

        Refuses when the mailbox already has a pending/running job. Without an
        explicit start date, continues from one minute before the newest message
        already backed up.
        """
        active = await asyncio.to_thread(db.find_active_job, self.db_path, options.mailbox)
        if active is not None:
            raise JobAlreadyActiveError(options.mailbox, active.id)

        if options.start_date is None:
            latest = await asyncio.to_thread(db.latest_received_date, self.db_path, options.mailbox)
            if latest is not None:
                options = dataclasses.replace(options, start_date=latest - datetime.timedelta(minutes=1))
        return await self.start_backup(options)

    def get_job_progress(self, job_id: str) -> Optional[BackupProgress]:
        return self._progress.get(job_id)

    async def load_job_progress(self, job_id: str) -> Optional[BackupProgress]:
        """In-memory progress, or the last snapshot persisted on the job row."""
        progress = self._progress.get(job_id)
        if progress is not None:
            return progress
        job = await asyncio.to_thread(db.get_job, self.db_path, job_id)
        return BackupProgress.from_job(job) if job else None

    def get_all_active_jobs(self) -> List[BackupProgress]:
        return [p for p in self._progress.values() if not p.status.is_terminal]

    async def get_job(self, job_id: str) -> Optional[BackupJob]:
        return await asyncio.to_thread(db.get_job, self.db_path, job_id)

    def cancel_job(self, job_id: str) -> bool:
        """Ask a running job to stop at its next folder/message boundary."""
        return self.interrupts.cancel(job_id)

    def cancel_all(self) -> None:
        self.interrupts.interrupt_all()

    async def wait_for_completion(self, job_id: str) -> JobStatus:
        """
        Wait until the job is completed or failed and return that status.

        Jobs started by this instance resolve a future on their terminal
        transition. Others (e.g. started before a restart) are polled from the
        metadata store every `job_poll_interval` seconds.
        """
        future = self._completion.get(job_id)
        if future is not None:
            # shield: a caller's timeout must not cancel the shared future
            return await asyncio.shield(future)

        while True:
            job = await asyncio.to_thread(db.get_job, self.db_path, job_id)
            if job is None:
                raise LookupError(f"Unknown backup job {job_id}")
            if job.status.is_terminal:
                return job.status
            await asyncio.sleep(self.settings.job_poll_interval)

    async def recover_interrupted(self) -> int:
        """Fail jobs left pending/running by a previous process."""
        count = await asyncio.to_thread(db.fail_unfinished_jobs, self.db_path, RESTART_REASON)
        if count:
            self.logger.warning(f"Marked {count} interrupted backup job(s) as failed")
        return count

    async def shutdown(self) -> None:
        """Cancel outstanding pipelines outright (process termination)."""
        self.cancel_all()
        tasks = [t for t in self._tasks.values() if not t.done()]
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _run(self, job_id: str, options: BackupOptions, progress: BackupProgress, token: CancelToken) -> None:
        log = job_logger(self.logger, job_id)
        try:
            await self._perform_backup(job_id, options, progress, token)
        except asyncio.CancelledError:
            # the row stays running until recover_interrupted() on the next start
            log.warning("Backup task cancelled before finishing")
            progress.errors.append(SHUTDOWN_REASON)
            raise
        finally:
            if not progress.status.is_terminal:
                progress.status = JobStatus.FAILED
            self.interrupts.unregister(job_id)
            self._tasks.pop(job_id, None)
            future = self._completion.pop(job_id, None)
            if future is not None and not future.done():
                future.set_result(progress.status)
            self._finished.append(job_id)
            self._prune_finished()

    async def _perform_backup(self, job_id: str, options: BackupOptions, progress: BackupProgress,
                              token: CancelToken) -> None:
        mailbox = options.mailbox
        log = job_logger(self.logger, job_id)
        try:
            await self._set_status(job_id, progress, JobStatus.RUNNING)

            folders = await select_folders(self.provider, mailbox, options.include_folders, options.exclude_folders)
            log.info(f"{len(folders)} folder(s) selected for {mailbox}")

            total = 0
            for folder in folders:
                token.raise_if_cancelled()
                total += await count_messages(self.provider, mailbox, folder)
            progress.total_emails = total
            await self._snapshot(job_id, progress)

            for folder in folders:
                token.raise_if_cancelled()
                progress.current_folder = folder.display_name
                await self._backup_folder(job_id, options, folder, progress, token)
                await self._snapshot(job_id, progress)

            progress.progress = 100
            await self._set_status(job_id, progress, JobStatus.COMPLETED)
            log.info(
                f"Backup completed: {progress.processed_emails}/{progress.total_emails} processed, "
                f"{progress.failed_emails} failed"
            )
        except Exception as e:
            log.exception(f"Backup failed: {e}")
            progress.errors.append(str(e))
            try:
                await self._set_status(job_id, progress, JobStatus.FAILED, str(e))
            except Exception as inner:
                progress.status = JobStatus.FAILED
                log.error(f"Could not mark job failed: {inner}")

    async def _backup_folder(self, job_id: str, options: BackupOptions, folder: MailFolder,
                             progress: BackupProgress, token: CancelToken) -> None:
        mailbox = options.mailbox
        log = job_logger(self.logger, job_id)
        try:
            await asyncio.to_thread(db.upsert_mail_folder, self.db_path, mailbox, folder)

            async for message in iter_messages(self.provider, mailbox, folder):
                token.raise_if_cancelled()
                try:
                    await self._backup_message(options, folder, message, progress)
                except _FATAL:
                    raise
                except SizeLimitExceeded as e:
                    log.warning(f"Skipping email {message.id}: {e}")
                    progress.mark_failed(f"Email {message.id}: {e}")
                    continue
                except Exception as e:
                    log.error(f"Email backup error for {message.id}: {e}")
                    progress.mark_failed(f"Email {message.id}: {e}")
                    continue
                progress.mark_processed()
        except _FATAL:
            raise
        except Exception as e:
            log.error(f"Folder backup error for {folder.display_name}: {e}")
            progress.errors.append(f"Folder {folder.display_name}: {e}")

    async def _backup_message(self, options: BackupOptions, folder: MailFolder, message: MailMessage,
                              progress: BackupProgress) -> bool:
        """Returns True if uploaded, False if it was already backed up."""
        mailbox = options.mailbox
        if await is_backed_up(self.db_path, mailbox, message.id):
            self.logger.debug(f"Email {message.id} already backed up, skipping")
            return False

        content = await fetch_message_content(self.provider, mailbox, message.id, options.max_email_size)
        record = await self.uploader.upload_message(mailbox, folder, message, content)
        progress.processed_bytes += len(content)

        if options.include_attachments and message.has_attachments:
            await self.uploader.upload_attachments(mailbox, message, record)
        return True

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _set_status(self, job_id: str, progress: BackupProgress, status: JobStatus,
                          error_message: Optional[str] = None) -> None:
        log = job_logger(self.logger, job_id)
        await self._snapshot(job_id, progress)
        await asyncio.to_thread(db.update_job_status, self.db_path, job_id, status, error_message)
        progress.status = status
        log.debug(f"-> {status.value}")

    async def _snapshot(self, job_id: str, progress: BackupProgress) -> None:
        await asyncio.to_thread(
            db.snapshot_job_progress,
            self.db_path,
            job_id,
            progress.total_emails,
            progress.processed_emails,
            progress.failed_emails,
            progress.processed_bytes,
            progress.current_folder,
        )

    def _prune_finished(self) -> None:
        """Forget the oldest finished progress entries beyond the configured cap."""
        excess = len(self._finished) - self.settings.max_finished_progress
        for job_id in self._finished[:max(0, excess)]:
            self._progress.pop(job_id, None)
        if excess > 0:
            del self._finished[:excess]
