#!/usr/bin/env python3

"""
scheduler.py

Recurring backups driven by cron expressions (APScheduler, asyncio flavour).

Each active ScheduleConfig owns exactly one trigger, keyed by config id. A fire:
1. computes the backup window
2. starts a backup job (no active-job guard, unlike the manual path)
3. waits for the job's terminal status, bounded by `job_timeout`
4. builds the daily archive when zip bundling is enabled
5. records last_run = window end
6. enforces retention for the config

Any exception escaping a fire ends up in the error log; it never reaches
APScheduler, so the next fire still happens.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Dict, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from mailvault import db
from mailvault.archiver import Archiver
from mailvault.config import Settings
from mailvault.errors import (
    BackupJobFailedError,
    ConcurrentModificationError,
    InvalidScheduleError,
    SchedulerTimeoutError,
)
from mailvault.jobs import JobManager
from mailvault.logger import get_logger
from mailvault.models import BackupKind, BackupOptions, ErrorLogEntry, JobStatus, ScheduleConfig
from mailvault.retention import enforce_retention
from mailvault.utils import utcnow

LOOKBACK = datetime.timedelta(hours=24)
TEMP_CLEANUP_JOB_ID = "temp-cleanup"


def compute_backup_window(config: ScheduleConfig,
                          now: Optional[datetime.datetime] = None) -> tuple[datetime.datetime, datetime.datetime]:
    """
    Window of a scheduled run.

    Incremental with a previous run: [last_run, now]. Anything else, full kind
    included: [now - 24h, now].
    """
    end = now or utcnow()
    if config.backup_kind is BackupKind.INCREMENTAL and config.last_run is not None:
        return config.last_run, end
    return end - LOOKBACK, end


def build_trigger(cron_expression: str, timezone: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(cron_expression, timezone=timezone)
    except ValueError as e:
        raise InvalidScheduleError(f"Invalid cron expression {cron_expression!r}: {e}") from e


class Scheduler:
    def __init__(self, settings: Settings, jobs: JobManager, archiver: Archiver):
        self.settings = settings
        self.db_path = settings.db_path
        self.jobs = jobs
        self.archiver = archiver
        self.logger = get_logger(__name__)
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._tasks: Dict[str, Job] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the trigger loop on the running event loop and register active configs."""
        if self._scheduler is not None:
            return
        self._scheduler = AsyncIOScheduler(
            timezone=self.settings.timezone,
            event_loop=asyncio.get_running_loop(),
        )
        self._scheduler.start()
        await self.initialize_scheduled_backups()

    async def initialize_scheduled_backups(self) -> int:
        configs = await asyncio.to_thread(db.list_schedule_configs, self.db_path, True)
        count = 0
        for config in configs:
            try:
                await self.schedule_backup(config)
                count += 1
            except InvalidScheduleError as e:
                self.logger.error(f"Not scheduling {config.mailbox} ({config.id}): {e}")
        self._schedule_temp_cleanup()
        self.logger.info(f"Initialized {count} scheduled backup(s)")
        return count

    async def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._tasks.clear()

    def _require_started(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            raise RuntimeError("Scheduler is not started")
        return self._scheduler

    def _schedule_temp_cleanup(self) -> None:
        trigger = build_trigger(self.settings.temp_cleanup_cron, self.settings.timezone)
        self._require_started().add_job(
            self.archiver.cleanup_temp_directory,
            trigger,
            id=TEMP_CLEANUP_JOB_ID,
            name="Temp directory cleanup",
            replace_existing=True,
            coalesce=True,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    async def schedule_backup(self, config: ScheduleConfig) -> Job:
        """(Re)register the trigger of one config, replacing any existing one."""
        trigger = build_trigger(config.cron_expression, self.settings.timezone)
        scheduler = self._require_started()

        self._unschedule(config.id)
        job = scheduler.add_job(
            self.execute_scheduled_backup,
            trigger,
            args=[config.id],
            id=config.id,
            name=f"Backup {config.mailbox}",
            replace_existing=True,
            coalesce=True,
            max_instances=self.settings.max_overlapping_runs,
        )
        self._tasks[config.id] = job

        next_run = trigger.get_next_fire_time(None, datetime.datetime.now(datetime.timezone.utc))
        saved = await self._record_run_times(config.id, next_run=next_run)
        if saved is not None:
            # keep the caller's copy writable by a later update_scheduled_backup
            config.next_run = saved.next_run
            config.version = saved.version
        self.logger.info(f"Scheduled backup for {config.mailbox} with cron: {config.cron_expression}")
        return job

    async def add_scheduled_backup(self, config: ScheduleConfig) -> ScheduleConfig:
        """Persist a new config and register its trigger when active."""
        build_trigger(config.cron_expression, self.settings.timezone)
        await asyncio.to_thread(db.insert_schedule_config, self.db_path, config)
        if config.is_active:
            await self.schedule_backup(config)
        return config

    async def update_scheduled_backup(self, config: ScheduleConfig) -> ScheduleConfig:
        """
        Save changes to a config read earlier and re-register or drop its trigger.

        Raises ConcurrentModificationError when the row moved on since it was read.
        """
        build_trigger(config.cron_expression, self.settings.timezone)
        await asyncio.to_thread(db.save_schedule_config, self.db_path, config)
        if config.is_active:
            await self.schedule_backup(config)
        else:
            self._unschedule(config.id)
        return config

    async def remove_scheduled_backup(self, config_id: str) -> bool:
        self._unschedule(config_id)
        removed = await asyncio.to_thread(db.delete_schedule_config, self.db_path, config_id)
        if removed:
            self.logger.info(f"Removed scheduled backup {config_id}")
        return removed

    def get_scheduled_tasks(self) -> Dict[str, Job]:
        return dict(self._tasks)

    def _unschedule(self, config_id: str) -> None:
        job = self._tasks.pop(config_id, None)
        if job is None or self._scheduler is None:
            return
        if self._scheduler.get_job(config_id) is not None:
            self._scheduler.remove_job(config_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute_scheduled_backup(self, config_id: str) -> None:
        """One fire of a config's trigger. Never raises."""
        try:
            await self._run_scheduled_backup(config_id)
        except Exception as e:
            self.logger.error(f"Scheduled backup failed for config {config_id}: {e}")
            await self.log_backup_error(config_id, e)

    async def _run_scheduled_backup(self, config_id: str) -> None:
        # Re-read: the config may have changed since the trigger was registered
        config = await asyncio.to_thread(db.get_schedule_config, self.db_path, config_id)
        if config is None or not config.is_active:
            self.logger.warning(f"Schedule config {config_id} is gone or inactive, skipping run")
            return

        self.logger.info(f"Executing scheduled backup for {config.mailbox}")
        start, end = compute_backup_window(config)
        max_size = config.max_email_size if config.max_email_size is not None else self.settings.default_max_email_size
        options = BackupOptions(
            mailbox=config.mailbox,
            kind=config.backup_kind,
            start_date=start,
            end_date=end,
            include_attachments=config.include_attachments,
            max_email_size=max_size,
        )

        job_id = await self.jobs.start_backup(options)
        await self.wait_for_job_completion(job_id)

        if config.zip_enabled:
            # records of this run are stamped after `end`; cover them up to job completion
            await self.archiver.create_daily_archive(config, start, utcnow())

        await self._update_last_run(config_id, end)
        await enforce_retention(config, self.archiver.storage, self.db_path)
        self.logger.info(f"Scheduled backup completed for {config.mailbox}")

    async def wait_for_job_completion(self, job_id: str) -> None:
        timeout = self.settings.job_timeout
        try:
            status = await asyncio.wait_for(self.jobs.wait_for_completion(job_id), timeout=timeout)
        except asyncio.TimeoutError:
            # the job itself keeps running
            raise SchedulerTimeoutError(f"Backup job timeout: {job_id} not finished after {timeout}s") from None

        if status is not JobStatus.COMPLETED:
            job = await self.jobs.get_job(job_id)
            progress = self.jobs.get_job_progress(job_id)
            reason = job.error_message if job and job.error_message else None
            if reason is None and progress is not None and progress.errors:
                reason = progress.errors[-1]
            raise BackupJobFailedError(f"Backup job failed: {reason or 'unknown error'}")

    async def _update_last_run(self, config_id: str, run_time: datetime.datetime) -> None:
        await self._record_run_times(config_id, last_run=run_time)

    async def _record_run_times(self, config_id: str, last_run: Optional[datetime.datetime] = None,
                                next_run: Optional[datetime.datetime] = None) -> Optional[ScheduleConfig]:
        """
        Versioned read-modify-write of a config's run timestamps, retried on conflict.

        Returns the saved row, or None when the config no longer exists.
        """
        retries = self.settings.max_config_conflict_retries
        for attempt in range(1, retries + 1):
            config = await asyncio.to_thread(db.get_schedule_config, self.db_path, config_id)
            if config is None:
                self.logger.warning(f"Schedule config {config_id} disappeared, run times not recorded")
                return None
            if last_run is not None:
                config.last_run = last_run
            if next_run is not None:
                config.next_run = next_run
            try:
                return await asyncio.to_thread(db.save_schedule_config, self.db_path, config)
            except ConcurrentModificationError:
                self.logger.debug(f"Config {config_id} changed concurrently (attempt {attempt}/{retries})")
        raise ConcurrentModificationError(f"Could not update schedule config {config_id} after {retries} attempts")

    async def log_backup_error(self, config_id: str, error: BaseException) -> None:
        entry = ErrorLogEntry(
            config_id=config_id,
            error=str(error),
            timestamp=utcnow(),
            error_type=type(error).__name__,
        )
        try:
            await asyncio.to_thread(db.log_backup_error, self.db_path, entry)
        except Exception as e:
            self.logger.error(f"Failed to log backup error for {config_id}: {e}")
