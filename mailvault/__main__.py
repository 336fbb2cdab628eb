#!/usr/bin/env python3
"""
__main__.py

Top-level CLI for mailvault.

- serve: run the scheduler daemon until SIGINT/SIGTERM
- backup: one manual backup of a mailbox, waiting for it to finish
- schedule add|remove|list: manage schedule configs
- errors: latest recorded failure per schedule
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import List, Optional

from mailvault import db
from mailvault.archiver import Archiver
from mailvault.config import Settings, load_settings
from mailvault.errors import InvalidScheduleError, JobAlreadyActiveError, MetadataWriteError
from mailvault.graph import GraphMailProvider
from mailvault.jobs import JobManager
from mailvault.logger import get_logger, setup_logger
from mailvault.models import BackupKind, BackupOptions, JobStatus, ScheduleConfig
from mailvault.progress import StatusReporter
from mailvault.scheduler import Scheduler, build_trigger
from mailvault.storage import RcloneObjectStore
from mailvault.utils import ensure_dirs, from_iso, install_signal_handlers, to_iso


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Mailvault – scheduled mailbox backups to object storage")
    p.add_argument("--config", type=Path, help="Path to config file")
    sub = p.add_subparsers(dest="action", required=True)

    sub.add_parser("serve", help="Run the backup scheduler until interrupted")

    b = sub.add_parser("backup", help="Back up one mailbox now")
    b.add_argument("mailbox")
    b.add_argument("--full", action="store_true", help="Full instead of incremental")
    b.add_argument("--start", help="ISO start date (default: continue after the last backed-up message)")
    b.add_argument("--end", help="ISO end date (default: now)")
    b.add_argument("--include", action="append", default=[], help="Only folders containing this text")
    b.add_argument("--exclude", action="append", default=[], help="Skip folders containing this text")
    b.add_argument("--no-attachments", action="store_true")
    b.add_argument("--max-size", type=float, help="Largest message to back up, in MB")

    s = sub.add_parser("schedule", help="Manage scheduled backups")
    ssub = s.add_subparsers(dest="schedule_action", required=True)
    sa = ssub.add_parser("add")
    sa.add_argument("mailbox")
    sa.add_argument("cron", help='Cron expression, e.g. "0 3 * * *"')
    sa.add_argument("--full", action="store_true")
    sa.add_argument("--retention-days", type=int, default=30)
    sa.add_argument("--no-attachments", action="store_true")
    sa.add_argument("--max-size", type=float)
    sa.add_argument("--zip", action="store_true", help="Upload a daily ZIP archive after each run")
    sa.add_argument("--inactive", action="store_true")
    sr = ssub.add_parser("remove")
    sr.add_argument("config_id")
    ssub.add_parser("list")

    sub.add_parser("errors", help="Show the latest failure of every schedule")
    return p


def build_services(settings: Settings):
    provider = GraphMailProvider(settings.tenant_id, settings.client_id, settings.client_secret)
    storage = RcloneObjectStore(settings.remote)
    jobs = JobManager(settings, provider, storage)
    archiver = Archiver(settings, storage)
    scheduler = Scheduler(settings, jobs, archiver)
    return provider, jobs, scheduler


async def serve(settings: Settings) -> int:
    logger = get_logger(__name__)
    provider, jobs, scheduler = build_services(settings)
    await jobs.recover_interrupted()

    stop = asyncio.Event()

    def on_interrupt():
        logger.warning("Interrupt received. Cancelling running jobs and shutting down...")
        jobs.cancel_all()
        stop.set()

    install_signal_handlers(asyncio.get_running_loop(), on_interrupt)

    reporter = StatusReporter(settings.status_interval, jobs.get_all_active_jobs)
    reporter.start()
    try:
        await scheduler.start()
        logger.info("Scheduler running")
        await stop.wait()
    finally:
        await scheduler.shutdown()
        await reporter.stop()
        await jobs.shutdown()
        await provider.close()
    return 0


async def run_backup(settings: Settings, args: argparse.Namespace) -> int:
    logger = get_logger(__name__)
    provider, jobs, _ = build_services(settings)

    options = BackupOptions(
        mailbox=args.mailbox,
        kind=BackupKind.FULL if args.full else BackupKind.INCREMENTAL,
        start_date=from_iso(args.start),
        end_date=from_iso(args.end),
        include_folders=args.include,
        exclude_folders=args.exclude,
        include_attachments=not args.no_attachments,
        max_email_size=args.max_size if args.max_size is not None else settings.default_max_email_size,
    )

    install_signal_handlers(asyncio.get_running_loop(), jobs.cancel_all)
    reporter = StatusReporter(settings.status_interval, jobs.get_all_active_jobs)
    reporter.start()
    try:
        try:
            job_id = await jobs.start_manual_backup(options)
        except JobAlreadyActiveError as e:
            logger.error(str(e))
            return 3
        status = await jobs.wait_for_completion(job_id)
        progress = await jobs.load_job_progress(job_id)
        if progress is not None:
            logger.info(progress.format_status())
            for err in progress.errors:
                logger.warning(f"  {err}")
    finally:
        await reporter.stop()
        await jobs.shutdown()
        await provider.close()
    return 0 if status is JobStatus.COMPLETED else 1


def schedule_command(settings: Settings, args: argparse.Namespace) -> int:
    logger = get_logger(__name__)
    if args.schedule_action == "add":
        config = ScheduleConfig(
            mailbox=args.mailbox,
            cron_expression=args.cron,
            is_active=not args.inactive,
            backup_kind=BackupKind.FULL if args.full else BackupKind.INCREMENTAL,
            retention_days=args.retention_days,
            include_attachments=not args.no_attachments,
            max_email_size=args.max_size,
            zip_enabled=args.zip,
        )
        try:
            build_trigger(config.cron_expression, settings.timezone)
            db.insert_schedule_config(settings.db_path, config)
        except (InvalidScheduleError, MetadataWriteError) as e:
            logger.error(str(e))
            return 2
        # a running daemon picks this up on its next start
        print(config.id)
        return 0

    if args.schedule_action == "remove":
        if not db.delete_schedule_config(settings.db_path, args.config_id):
            logger.error(f"No schedule config {args.config_id}")
            return 1
        return 0

    for c in db.list_schedule_configs(settings.db_path):
        state = "active" if c.is_active else "inactive"
        print(
            f"{c.id}  {c.mailbox}  '{c.cron_expression}'  {c.backup_kind.value}  {state}  "
            f"retention={c.retention_days}d  zip={'yes' if c.zip_enabled else 'no'}  "
            f"last_run={to_iso(c.last_run) or '-'}  next_run={to_iso(c.next_run) or '-'}"
        )
    return 0


def errors_command(settings: Settings) -> int:
    for c in db.list_schedule_configs(settings.db_path):
        entry = db.get_backup_error(settings.db_path, c.id)
        if entry is None:
            continue
        print(f"{c.id}  {c.mailbox}  {to_iso(entry.timestamp)}  {entry.error_type}: {entry.error}")
    return 0


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    # Initialize central logger once, then obtain module logger
    setup_logger(settings)
    logger = get_logger(__name__)

    ensure_dirs(settings.tmp_dir, settings.archive_tmp_dir)

    # Ensure DB schema is present. Failure here is fatal for the run.
    try:
        logger.debug(f"Ensuring database schema at {settings.db_path}")
        db.ensure_schema(settings.db_path)
    except Exception as e:
        logger.exception(f"Failed to ensure DB schema: {e}")
        sys.exit(2)

    start = time.time()
    if args.action == "serve":
        code = asyncio.run(serve(settings))
    elif args.action == "backup":
        code = asyncio.run(run_backup(settings, args))
    elif args.action == "schedule":
        code = schedule_command(settings, args)
    else:
        code = errors_command(settings)

    elapsed = time.time() - start
    logger.info(f"Action '{args.action}' completed in {elapsed:.1f}s")
    sys.exit(code)


if __name__ == "__main__":
    main()
