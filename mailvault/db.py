#!/usr/bin/env python3

"""
db.py

SQLite access layer (the metadata store):
- ensure schema
- backup jobs: create, transition, progress snapshot, active lookup, purge
- folder snapshots
- message / attachment records (dedup, window and retention queries)
- schedule configs with optimistic versioning
- system settings key/value rows (error log)

Uses thread-local connections; callers on the event loop reach this module via
asyncio.to_thread, so each worker thread keeps its own connection.
"""

from __future__ import annotations

import datetime
import json
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from mailvault.errors import ConcurrentModificationError, MetadataWriteError
from mailvault.logger import get_logger
from mailvault.models import (
    AttachmentRecord,
    BackupJob,
    BackupKind,
    ErrorLogEntry,
    JobStatus,
    MailFolder,
    MessageRecord,
    ScheduleConfig,
)
from mailvault.utils import from_iso, to_iso, utcnow

_thread_local = threading.local()

ERROR_KEY_PREFIX = "backup_error_"


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Return a sqlite3.Connection specific to the current thread and db_path.
    Ensures parent directories exist.
    """
    conns = getattr(_thread_local, "conns", None)
    if conns is None:
        conns = {}
        setattr(_thread_local, "conns", conns)

    key = str(db_path.resolve())
    if key in conns:
        conn = conns[key]
        try:
            conn.execute("SELECT 1;")
            return conn
        except (sqlite3.ProgrammingError, sqlite3.OperationalError, sqlite3.DatabaseError):
            try:
                conn.close()
            except sqlite3.Error:
                pass
            del conns[key]

    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    conns[key] = conn
    return conn


def ensure_schema(db_path: Path) -> None:
    """
    Ensure the SQLite schema exists. Safe to call multiple times.
    """
    _logger = get_logger(__name__)
    conn = get_connection(db_path)
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS backup_jobs
        (
            id               TEXT PRIMARY KEY,
            mailbox          TEXT    NOT NULL,
            kind             TEXT    NOT NULL,
            status           TEXT    NOT NULL,
            start_date       TEXT,
            end_date         TEXT,
            total_emails     INTEGER NOT NULL DEFAULT 0,
            processed_emails INTEGER NOT NULL DEFAULT 0,
            failed_emails    INTEGER NOT NULL DEFAULT 0,
            processed_bytes  INTEGER NOT NULL DEFAULT 0,
            current_folder   TEXT,
            error_message    TEXT,
            created_at       TEXT    NOT NULL,
            updated_at       TEXT    NOT NULL,
            completed_at     TEXT
        );

        CREATE TABLE IF NOT EXISTS mail_folders
        (
            mailbox            TEXT NOT NULL,
            folder_id          TEXT NOT NULL,
            display_name       TEXT,
            parent_folder_id   TEXT,
            child_folder_count INTEGER DEFAULT 0,
            unread_item_count  INTEGER DEFAULT 0,
            total_item_count   INTEGER DEFAULT 0,
            updated_at         TEXT,
            PRIMARY KEY (mailbox, folder_id)
        );

        CREATE TABLE IF NOT EXISTS messages
        (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox         TEXT NOT NULL,
            message_id      TEXT NOT NULL,
            folder_id       TEXT,
            subject         TEXT,
            sender_email    TEXT,
            sender_name     TEXT,
            recipients      TEXT,
            cc_recipients   TEXT,
            bcc_recipients  TEXT,
            body_preview    TEXT,
            received_date   TEXT,
            sent_date       TEXT,
            is_read         INTEGER DEFAULT 0,
            importance      TEXT,
            has_attachments INTEGER DEFAULT 0,
            size_bytes      INTEGER DEFAULT 0,
            storage_key     TEXT NOT NULL,
            backup_status   TEXT NOT NULL,
            backup_date     TEXT NOT NULL,
            UNIQUE (mailbox, message_id)
        );

        CREATE TABLE IF NOT EXISTS attachments
        (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            attachment_id  TEXT    NOT NULL,
            message_row_id INTEGER NOT NULL REFERENCES messages (id) ON DELETE CASCADE,
            filename       TEXT,
            content_type   TEXT,
            size           INTEGER DEFAULT 0,
            storage_key    TEXT    NOT NULL,
            backup_status  TEXT    NOT NULL,
            backup_date    TEXT    NOT NULL,
            UNIQUE (message_row_id, attachment_id)
        );

        CREATE TABLE IF NOT EXISTS schedule_configs
        (
            id                  TEXT PRIMARY KEY,
            mailbox             TEXT    NOT NULL,
            cron_expression     TEXT    NOT NULL,
            is_active           INTEGER NOT NULL DEFAULT 1,
            backup_kind         TEXT    NOT NULL,
            retention_days      INTEGER NOT NULL,
            include_attachments INTEGER NOT NULL DEFAULT 1,
            max_email_size      REAL,
            zip_enabled         INTEGER NOT NULL DEFAULT 0,
            last_run            TEXT,
            next_run            TEXT,
            version             INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS system_settings
        (
            key        TEXT PRIMARY KEY,
            value      TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_jobs_mailbox_status ON backup_jobs (mailbox, status);
        CREATE INDEX IF NOT EXISTS idx_jobs_created_at ON backup_jobs (created_at);
        CREATE INDEX IF NOT EXISTS idx_messages_backup_date ON messages (mailbox, backup_date);
        CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments (message_row_id);
        """
    )
    conn.commit()
    _logger.debug(f"Schema ensured at {db_path}")


# ----------------------------------------------------------------------
# Backup jobs
# ----------------------------------------------------------------------
def _row_to_job(r: sqlite3.Row) -> BackupJob:
    return BackupJob(
        id=r["id"],
        mailbox=r["mailbox"],
        kind=BackupKind(r["kind"]),
        status=JobStatus(r["status"]),
        start_date=from_iso(r["start_date"]),
        end_date=from_iso(r["end_date"]),
        total_emails=r["total_emails"],
        processed_emails=r["processed_emails"],
        failed_emails=r["failed_emails"],
        processed_bytes=r["processed_bytes"],
        current_folder=r["current_folder"],
        error_message=r["error_message"],
        created_at=from_iso(r["created_at"]),
        completed_at=from_iso(r["completed_at"]),
    )


def insert_job(db_path: Path, job: BackupJob) -> None:
    now = to_iso(job.created_at or utcnow())
    conn = get_connection(db_path)
    conn.execute(
        """
        INSERT INTO backup_jobs (id, mailbox, kind, status, start_date, end_date, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (job.id, job.mailbox, job.kind.value, job.status.value,
         to_iso(job.start_date), to_iso(job.end_date), now, now),
    )
    conn.commit()


def get_job(db_path: Path, job_id: str) -> Optional[BackupJob]:
    conn = get_connection(db_path)
    r = conn.execute("SELECT * FROM backup_jobs WHERE id = ?;", (job_id,)).fetchone()
    return _row_to_job(r) if r else None


def update_job_status(db_path: Path, job_id: str, status: JobStatus, error_message: Optional[str] = None) -> None:
    """
    Set a job's status. `completed_at` is stamped for both terminal states.
    """
    now = to_iso(utcnow())
    conn = get_connection(db_path)
    conn.execute(
        """
        UPDATE backup_jobs
        SET status        = ?,
            updated_at    = ?,
            completed_at  = CASE WHEN ? THEN ? ELSE completed_at END,
            error_message = COALESCE(?, error_message)
        WHERE id = ?;
        """,
        (status.value, now, int(status.is_terminal), now, error_message, job_id),
    )
    conn.commit()


def snapshot_job_progress(db_path: Path, job_id: str, total: int, processed: int, failed: int,
                          processed_bytes: int, current_folder: Optional[str]) -> None:
    conn = get_connection(db_path)
    conn.execute(
        """
        UPDATE backup_jobs
        SET total_emails     = ?,
            processed_emails = ?,
            failed_emails    = ?,
            processed_bytes  = ?,
            current_folder   = ?,
            updated_at       = ?
        WHERE id = ?;
        """,
        (total, processed, failed, processed_bytes, current_folder, to_iso(utcnow()), job_id),
    )
    conn.commit()


def find_active_job(db_path: Path, mailbox: str) -> Optional[BackupJob]:
    conn = get_connection(db_path)
    r = conn.execute(
        """
        SELECT *
        FROM backup_jobs
        WHERE mailbox = ?
          AND status IN ('pending', 'running')
        ORDER BY created_at DESC
        LIMIT 1;
        """,
        (mailbox,),
    ).fetchone()
    return _row_to_job(r) if r else None


def fail_unfinished_jobs(db_path: Path, reason: str) -> int:
    """Mark every pending/running job as failed. Returns the number of rows touched."""
    now = to_iso(utcnow())
    conn = get_connection(db_path)
    cur = conn.execute(
        """
        UPDATE backup_jobs
        SET status        = 'failed',
            error_message = ?,
            updated_at    = ?,
            completed_at  = ?
        WHERE status IN ('pending', 'running');
        """,
        (reason, now, now),
    )
    conn.commit()
    return cur.rowcount


def delete_jobs_older_than(db_path: Path, mailbox: str, cutoff: datetime.datetime) -> int:
    conn = get_connection(db_path)
    cur = conn.execute(
        "DELETE FROM backup_jobs WHERE mailbox = ? AND created_at < ?;",
        (mailbox, to_iso(cutoff)),
    )
    conn.commit()
    return cur.rowcount


# ----------------------------------------------------------------------
# Folder snapshots
# ----------------------------------------------------------------------
def upsert_mail_folder(db_path: Path, mailbox: str, folder: MailFolder) -> None:
    conn = get_connection(db_path)
    conn.execute(
        """
        INSERT INTO mail_folders
        (mailbox, folder_id, display_name, parent_folder_id, child_folder_count,
         unread_item_count, total_item_count, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT(mailbox, folder_id) DO
        UPDATE SET
            display_name=excluded.display_name,
            parent_folder_id=excluded.parent_folder_id,
            child_folder_count=excluded.child_folder_count,
            unread_item_count=excluded.unread_item_count,
            total_item_count=excluded.total_item_count,
            updated_at=excluded.updated_at;
        """,
        (mailbox, folder.id, folder.display_name, folder.parent_folder_id, folder.child_folder_count,
         folder.unread_item_count, folder.total_item_count, to_iso(utcnow())),
    )
    conn.commit()


def fetch_mail_folders(db_path: Path, mailbox: str) -> List[MailFolder]:
    conn = get_connection(db_path)
    rows = conn.execute("SELECT * FROM mail_folders WHERE mailbox = ? ORDER BY display_name;", (mailbox,)).fetchall()
    return [
        MailFolder(
            id=r["folder_id"],
            display_name=r["display_name"] or "",
            parent_folder_id=r["parent_folder_id"],
            child_folder_count=r["child_folder_count"] or 0,
            unread_item_count=r["unread_item_count"] or 0,
            total_item_count=r["total_item_count"] or 0,
        )
        for r in rows
    ]


# ----------------------------------------------------------------------
# Message and attachment records
# ----------------------------------------------------------------------
def _row_to_message(r: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        id=r["id"],
        mailbox=r["mailbox"],
        message_id=r["message_id"],
        folder_id=r["folder_id"],
        subject=r["subject"] or "",
        sender_email=r["sender_email"] or "",
        sender_name=r["sender_name"] or "",
        recipients=json.loads(r["recipients"] or "[]"),
        cc_recipients=json.loads(r["cc_recipients"] or "[]"),
        bcc_recipients=json.loads(r["bcc_recipients"] or "[]"),
        body_preview=r["body_preview"] or "",
        received_date=from_iso(r["received_date"]),
        sent_date=from_iso(r["sent_date"]),
        is_read=bool(r["is_read"]),
        importance=r["importance"] or "normal",
        has_attachments=bool(r["has_attachments"]),
        size_bytes=r["size_bytes"] or 0,
        storage_key=r["storage_key"],
        backup_status=r["backup_status"],
        backup_date=from_iso(r["backup_date"]),
    )


def find_message(db_path: Path, mailbox: str, message_id: str) -> Optional[MessageRecord]:
    """Dedup lookup by (mailbox, provider message id)."""
    conn = get_connection(db_path)
    r = conn.execute(
        "SELECT * FROM messages WHERE mailbox = ? AND message_id = ? LIMIT 1;",
        (mailbox, message_id),
    ).fetchone()
    return _row_to_message(r) if r else None


def insert_message(db_path: Path, record: MessageRecord) -> int:
    """
    Insert a message record and return its row id.

    Records are immutable: an existing (mailbox, message_id) is never overwritten
    and raises MetadataWriteError instead.
    """
    conn = get_connection(db_path)
    try:
        cur = conn.execute(
            """
            INSERT INTO messages
            (mailbox, message_id, folder_id, subject, sender_email, sender_name, recipients,
             cc_recipients, bcc_recipients, body_preview, received_date, sent_date, is_read,
             importance, has_attachments, size_bytes, storage_key, backup_status, backup_date)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                record.mailbox,
                record.message_id,
                record.folder_id,
                record.subject,
                record.sender_email,
                record.sender_name,
                json.dumps(record.recipients),
                json.dumps(record.cc_recipients),
                json.dumps(record.bcc_recipients),
                record.body_preview,
                to_iso(record.received_date),
                to_iso(record.sent_date),
                int(record.is_read),
                record.importance,
                int(record.has_attachments),
                record.size_bytes,
                record.storage_key,
                record.backup_status,
                to_iso(record.backup_date),
            ),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise MetadataWriteError(f"Failed to record message {record.message_id}: {e}") from e
    return cur.lastrowid


def fetch_messages_in_window(db_path: Path, mailbox: str, start: datetime.datetime,
                             end: datetime.datetime) -> List[MessageRecord]:
    """Records whose backup_date lies in [start, end] (both inclusive)."""
    conn = get_connection(db_path)
    rows = conn.execute(
        """
        SELECT *
        FROM messages
        WHERE mailbox = ?
          AND backup_date >= ?
          AND backup_date <= ?
        ORDER BY backup_date;
        """,
        (mailbox, to_iso(start), to_iso(end)),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def fetch_messages_older_than(db_path: Path, mailbox: str, cutoff: datetime.datetime) -> List[MessageRecord]:
    conn = get_connection(db_path)
    rows = conn.execute(
        "SELECT * FROM messages WHERE mailbox = ? AND backup_date < ? ORDER BY backup_date;",
        (mailbox, to_iso(cutoff)),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def delete_messages_older_than(db_path: Path, mailbox: str, cutoff: datetime.datetime) -> int:
    """Delete message rows (their attachment rows cascade)."""
    conn = get_connection(db_path)
    cur = conn.execute(
        "DELETE FROM messages WHERE mailbox = ? AND backup_date < ?;",
        (mailbox, to_iso(cutoff)),
    )
    conn.commit()
    return cur.rowcount


def latest_received_date(db_path: Path, mailbox: str) -> Optional[datetime.datetime]:
    conn = get_connection(db_path)
    r = conn.execute(
        "SELECT MAX(received_date) AS latest FROM messages WHERE mailbox = ? AND received_date IS NOT NULL;",
        (mailbox,),
    ).fetchone()
    return from_iso(r["latest"]) if r else None


def count_messages(db_path: Path, mailbox: str) -> int:
    conn = get_connection(db_path)
    return conn.execute("SELECT COUNT(*) FROM messages WHERE mailbox = ?;", (mailbox,)).fetchone()[0]


def upsert_attachment(db_path: Path, record: AttachmentRecord) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO attachments
            (attachment_id, message_row_id, filename, content_type, size, storage_key, backup_status, backup_date)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT(message_row_id, attachment_id) DO
            UPDATE SET
                filename=excluded.filename,
                content_type=excluded.content_type,
                size=excluded.size,
                storage_key=excluded.storage_key,
                backup_status=excluded.backup_status,
                backup_date=excluded.backup_date;
            """,
            (record.attachment_id, record.message_row_id, record.filename, record.content_type,
             record.size, record.storage_key, record.backup_status, to_iso(record.backup_date)),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise MetadataWriteError(f"Failed to record attachment {record.attachment_id}: {e}") from e


def fetch_attachments_for_messages(db_path: Path, message_row_ids: Iterable[int]) -> List[AttachmentRecord]:
    ids = list(message_row_ids)
    if not ids:
        return []
    conn = get_connection(db_path)
    placeholders = ",".join("?" for _ in ids)
    rows = conn.execute(
        f"SELECT * FROM attachments WHERE message_row_id IN ({placeholders}) ORDER BY id;",
        ids,
    ).fetchall()
    return [
        AttachmentRecord(
            id=r["id"],
            attachment_id=r["attachment_id"],
            message_row_id=r["message_row_id"],
            filename=r["filename"] or "",
            content_type=r["content_type"] or "application/octet-stream",
            size=r["size"] or 0,
            storage_key=r["storage_key"],
            backup_status=r["backup_status"],
            backup_date=from_iso(r["backup_date"]),
        )
        for r in rows
    ]


# ----------------------------------------------------------------------
# Schedule configs
# ----------------------------------------------------------------------
def _row_to_config(r: sqlite3.Row) -> ScheduleConfig:
    return ScheduleConfig(
        id=r["id"],
        mailbox=r["mailbox"],
        cron_expression=r["cron_expression"],
        is_active=bool(r["is_active"]),
        backup_kind=BackupKind(r["backup_kind"]),
        retention_days=r["retention_days"],
        include_attachments=bool(r["include_attachments"]),
        max_email_size=r["max_email_size"],
        zip_enabled=bool(r["zip_enabled"]),
        last_run=from_iso(r["last_run"]),
        next_run=from_iso(r["next_run"]),
        version=r["version"],
    )


def insert_schedule_config(db_path: Path, config: ScheduleConfig) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO schedule_configs
            (id, mailbox, cron_expression, is_active, backup_kind, retention_days, include_attachments,
             max_email_size, zip_enabled, last_run, next_run, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0);
            """,
            (config.id, config.mailbox, config.cron_expression, int(config.is_active), config.backup_kind.value,
             config.retention_days, int(config.include_attachments), config.max_email_size,
             int(config.zip_enabled), to_iso(config.last_run), to_iso(config.next_run)),
        )
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise MetadataWriteError(f"Schedule config {config.id} already exists") from e
    config.version = 0


def get_schedule_config(db_path: Path, config_id: str) -> Optional[ScheduleConfig]:
    conn = get_connection(db_path)
    r = conn.execute("SELECT * FROM schedule_configs WHERE id = ?;", (config_id,)).fetchone()
    return _row_to_config(r) if r else None


def list_schedule_configs(db_path: Path, active_only: bool = False) -> List[ScheduleConfig]:
    conn = get_connection(db_path)
    sql = "SELECT * FROM schedule_configs"
    if active_only:
        sql += " WHERE is_active = 1"
    rows = conn.execute(sql + " ORDER BY mailbox, id;").fetchall()
    return [_row_to_config(r) for r in rows]


def save_schedule_config(db_path: Path, config: ScheduleConfig) -> ScheduleConfig:
    """
    Write back a config read earlier. Fails with ConcurrentModificationError if the
    row was changed (or removed) since `config.version` was read.
    """
    conn = get_connection(db_path)
    cur = conn.execute(
        """
        UPDATE schedule_configs
        SET mailbox             = ?,
            cron_expression     = ?,
            is_active           = ?,
            backup_kind         = ?,
            retention_days      = ?,
            include_attachments = ?,
            max_email_size      = ?,
            zip_enabled         = ?,
            last_run            = ?,
            next_run            = ?,
            version             = version + 1
        WHERE id = ?
          AND version = ?;
        """,
        (config.mailbox, config.cron_expression, int(config.is_active), config.backup_kind.value,
         config.retention_days, int(config.include_attachments), config.max_email_size,
         int(config.zip_enabled), to_iso(config.last_run), to_iso(config.next_run),
         config.id, config.version),
    )
    conn.commit()
    if cur.rowcount != 1:
        raise ConcurrentModificationError(
            f"Schedule config {config.id} changed since version {config.version} was read"
        )
    config.version += 1
    return config


def delete_schedule_config(db_path: Path, config_id: str) -> bool:
    conn = get_connection(db_path)
    cur = conn.execute("DELETE FROM schedule_configs WHERE id = ?;", (config_id,))
    conn.commit()
    return cur.rowcount > 0


# ----------------------------------------------------------------------
# System settings / error log
# ----------------------------------------------------------------------
def put_setting(db_path: Path, key: str, value: dict) -> None:
    conn = get_connection(db_path)
    conn.execute(
        """
        INSERT INTO system_settings (key, value, updated_at)
        VALUES (?, ?, ?) ON CONFLICT(key) DO
        UPDATE SET value=excluded.value, updated_at=excluded.updated_at;
        """,
        (key, json.dumps(value), to_iso(utcnow())),
    )
    conn.commit()


def get_setting(db_path: Path, key: str) -> Optional[dict]:
    conn = get_connection(db_path)
    r = conn.execute("SELECT value FROM system_settings WHERE key = ?;", (key,)).fetchone()
    return json.loads(r["value"]) if r else None


def log_backup_error(db_path: Path, entry: ErrorLogEntry) -> None:
    """Overwrite the single error-log entry kept for a schedule config."""
    put_setting(db_path, f"{ERROR_KEY_PREFIX}{entry.config_id}", entry.to_dict())


def get_backup_error(db_path: Path, config_id: str) -> Optional[ErrorLogEntry]:
    data = get_setting(db_path, f"{ERROR_KEY_PREFIX}{config_id}")
    if data is None:
        return None
    return ErrorLogEntry(
        config_id=config_id,
        error=data.get("error", ""),
        error_type=data.get("error_type", ""),
        timestamp=from_iso(data.get("timestamp")) or utcnow(),
    )
