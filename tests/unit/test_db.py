#!/usr/bin/env python3
"""
Unit tests for db.py module.
"""

import datetime
import sqlite3

import pytest

from mailvault import db
from mailvault.errors import ConcurrentModificationError, MetadataWriteError
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

T0 = datetime.datetime(2024, 3, 1, 8, 0, 0, tzinfo=datetime.timezone.utc)


def _job(job_id="job-1", mailbox="a@example.com", status=JobStatus.PENDING, created=T0):
    return BackupJob(id=job_id, mailbox=mailbox, kind=BackupKind.FULL, status=status,
                     start_date=None, end_date=T0, created_at=created)


def _record(message_id, backup_date=T0, mailbox="a@example.com", received=None):
    return MessageRecord(
        mailbox=mailbox,
        message_id=message_id,
        storage_key=f"{mailbox}/emails/inbox/{message_id}.eml",
        backup_date=backup_date,
        folder_id="inbox",
        subject="hello",
        recipients=["b@example.com"],
        received_date=received,
        size_bytes=10,
    )


class TestEnsureSchema:

    def test_creates_tables(self, tmp_path):
        db_path = tmp_path / "test.db"
        db.ensure_schema(db_path)

        conn = sqlite3.connect(str(db_path))
        names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table';")}
        conn.close()
        assert {"backup_jobs", "mail_folders", "messages", "attachments",
                "schedule_configs", "system_settings"} <= names

    def test_idempotent(self, tmp_path):
        db_path = tmp_path / "test.db"
        db.ensure_schema(db_path)
        db.ensure_schema(db_path)

        conn = sqlite3.connect(str(db_path))
        count = conn.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages';").fetchone()[0]
        conn.close()
        assert count == 1


class TestJobs:

    def test_insert_and_get(self, test_db):
        db.insert_job(test_db, _job())
        job = db.get_job(test_db, "job-1")
        assert job.status is JobStatus.PENDING
        assert job.kind is BackupKind.FULL
        assert job.end_date == T0
        assert job.completed_at is None

    def test_get_unknown_returns_none(self, test_db):
        assert db.get_job(test_db, "missing") is None

    def test_terminal_status_stamps_completed_at(self, test_db):
        db.insert_job(test_db, _job())
        db.update_job_status(test_db, "job-1", JobStatus.RUNNING)
        assert db.get_job(test_db, "job-1").completed_at is None

        db.update_job_status(test_db, "job-1", JobStatus.FAILED, "boom")
        job = db.get_job(test_db, "job-1")
        assert job.status is JobStatus.FAILED
        assert job.error_message == "boom"
        assert job.completed_at is not None

    def test_snapshot_progress(self, test_db):
        db.insert_job(test_db, _job())
        db.snapshot_job_progress(test_db, "job-1", 10, 4, 1, 2048, "Inbox")
        job = db.get_job(test_db, "job-1")
        assert (job.total_emails, job.processed_emails, job.failed_emails) == (10, 4, 1)
        assert job.processed_bytes == 2048
        assert job.current_folder == "Inbox"

    def test_find_active_job(self, test_db):
        db.insert_job(test_db, _job("done", status=JobStatus.COMPLETED))
        assert db.find_active_job(test_db, "a@example.com") is None

        db.insert_job(test_db, _job("live", status=JobStatus.RUNNING))
        assert db.find_active_job(test_db, "a@example.com").id == "live"
        assert db.find_active_job(test_db, "other@example.com") is None

    def test_fail_unfinished_jobs(self, test_db):
        db.insert_job(test_db, _job("p", status=JobStatus.PENDING))
        db.insert_job(test_db, _job("r", status=JobStatus.RUNNING))
        db.insert_job(test_db, _job("c", status=JobStatus.COMPLETED))

        assert db.fail_unfinished_jobs(test_db, "restart") == 2
        assert db.get_job(test_db, "p").status is JobStatus.FAILED
        assert db.get_job(test_db, "r").error_message == "restart"
        assert db.get_job(test_db, "c").status is JobStatus.COMPLETED

    def test_delete_jobs_older_than(self, test_db):
        cutoff = T0
        db.insert_job(test_db, _job("old", created=cutoff - datetime.timedelta(seconds=1)))
        db.insert_job(test_db, _job("edge", created=cutoff))
        db.insert_job(test_db, _job("other", mailbox="b@example.com", created=cutoff - datetime.timedelta(days=9)))

        assert db.delete_jobs_older_than(test_db, "a@example.com", cutoff) == 1
        assert db.get_job(test_db, "old") is None
        assert db.get_job(test_db, "edge") is not None
        assert db.get_job(test_db, "other") is not None


class TestFolders:

    def test_upsert_updates_counts(self, test_db):
        db.upsert_mail_folder(test_db, "a@example.com", MailFolder(id="f1", display_name="Inbox", total_item_count=3))
        db.upsert_mail_folder(test_db, "a@example.com", MailFolder(id="f1", display_name="Inbox", total_item_count=5))
        folders = db.fetch_mail_folders(test_db, "a@example.com")
        assert len(folders) == 1
        assert folders[0].total_item_count == 5


class TestMessages:

    def test_insert_and_find(self, test_db):
        row_id = db.insert_message(test_db, _record("m1", received=T0))
        assert row_id > 0
        rec = db.find_message(test_db, "a@example.com", "m1")
        assert rec.id == row_id
        assert rec.recipients == ["b@example.com"]
        assert rec.backup_status == "completed"
        assert rec.received_date == T0

    def test_find_is_scoped_by_mailbox(self, test_db):
        db.insert_message(test_db, _record("m1"))
        assert db.find_message(test_db, "b@example.com", "m1") is None

    def test_duplicate_insert_raises_and_keeps_first(self, test_db):
        db.insert_message(test_db, _record("m1"))
        dup = _record("m1")
        dup.storage_key = "somewhere/else.eml"
        with pytest.raises(MetadataWriteError):
            db.insert_message(test_db, dup)
        assert db.find_message(test_db, "a@example.com", "m1").storage_key.endswith("m1.eml")
        assert db.count_messages(test_db, "a@example.com") == 1

    def test_window_is_inclusive(self, test_db):
        start, end = T0, T0 + datetime.timedelta(hours=1)
        db.insert_message(test_db, _record("before", start - datetime.timedelta(microseconds=1)))
        db.insert_message(test_db, _record("at-start", start))
        db.insert_message(test_db, _record("at-end", end))
        db.insert_message(test_db, _record("after", end + datetime.timedelta(seconds=1)))

        ids = [r.message_id for r in db.fetch_messages_in_window(test_db, "a@example.com", start, end)]
        assert ids == ["at-start", "at-end"]

    def test_older_than_is_strict(self, test_db):
        db.insert_message(test_db, _record("old", T0 - datetime.timedelta(seconds=1)))
        db.insert_message(test_db, _record("edge", T0))

        assert [r.message_id for r in db.fetch_messages_older_than(test_db, "a@example.com", T0)] == ["old"]
        assert db.delete_messages_older_than(test_db, "a@example.com", T0) == 1
        assert db.find_message(test_db, "a@example.com", "edge") is not None

    def test_latest_received_date(self, test_db):
        assert db.latest_received_date(test_db, "a@example.com") is None
        db.insert_message(test_db, _record("m1", received=T0))
        db.insert_message(test_db, _record("m2", received=T0 + datetime.timedelta(days=1)))
        assert db.latest_received_date(test_db, "a@example.com") == T0 + datetime.timedelta(days=1)


class TestAttachments:

    def test_upsert_and_cascade(self, test_db):
        row_id = db.insert_message(test_db, _record("m1", T0 - datetime.timedelta(days=1)))
        att = AttachmentRecord(attachment_id="a1", message_row_id=row_id, filename="doc.pdf",
                               content_type="application/pdf", size=3, storage_key="k", backup_date=T0)
        db.upsert_attachment(test_db, att)
        att.size = 4
        db.upsert_attachment(test_db, att)

        found = db.fetch_attachments_for_messages(test_db, [row_id])
        assert len(found) == 1
        assert found[0].size == 4

        db.delete_messages_older_than(test_db, "a@example.com", T0)
        assert db.fetch_attachments_for_messages(test_db, [row_id]) == []

    def test_fetch_for_no_ids(self, test_db):
        assert db.fetch_attachments_for_messages(test_db, []) == []


class TestScheduleConfigs:

    def test_insert_get_list(self, test_db):
        cfg = ScheduleConfig(mailbox="a@example.com", cron_expression="0 3 * * *", zip_enabled=True)
        db.insert_schedule_config(test_db, cfg)
        db.insert_schedule_config(test_db, ScheduleConfig(mailbox="b@example.com", cron_expression="0 4 * * *",
                                                          is_active=False))

        loaded = db.get_schedule_config(test_db, cfg.id)
        assert loaded.zip_enabled is True
        assert loaded.backup_kind is BackupKind.INCREMENTAL
        assert loaded.version == 0
        assert len(db.list_schedule_configs(test_db)) == 2
        assert [c.mailbox for c in db.list_schedule_configs(test_db, active_only=True)] == ["a@example.com"]

    def test_insert_duplicate_id_raises(self, test_db):
        cfg = ScheduleConfig(mailbox="a@example.com", cron_expression="0 3 * * *")
        db.insert_schedule_config(test_db, cfg)
        with pytest.raises(MetadataWriteError):
            db.insert_schedule_config(test_db, cfg)

    def test_versioned_save(self, test_db):
        cfg = ScheduleConfig(mailbox="a@example.com", cron_expression="0 3 * * *")
        db.insert_schedule_config(test_db, cfg)

        first = db.get_schedule_config(test_db, cfg.id)
        second = db.get_schedule_config(test_db, cfg.id)

        first.last_run = T0
        db.save_schedule_config(test_db, first)
        assert first.version == 1

        second.retention_days = 7
        with pytest.raises(ConcurrentModificationError):
            db.save_schedule_config(test_db, second)

        stored = db.get_schedule_config(test_db, cfg.id)
        assert stored.last_run == T0
        assert stored.retention_days == 30
        assert stored.version == 1

    def test_save_removed_config_raises(self, test_db):
        cfg = ScheduleConfig(mailbox="a@example.com", cron_expression="0 3 * * *")
        db.insert_schedule_config(test_db, cfg)
        assert db.delete_schedule_config(test_db, cfg.id) is True
        assert db.delete_schedule_config(test_db, cfg.id) is False
        with pytest.raises(ConcurrentModificationError):
            db.save_schedule_config(test_db, cfg)


class TestErrorLog:

    def test_latest_error_overwrites(self, test_db):
        db.log_backup_error(test_db, ErrorLogEntry(config_id="c1", error="first", timestamp=T0))
        db.log_backup_error(test_db, ErrorLogEntry(config_id="c1", error="second",
                                                   timestamp=T0 + datetime.timedelta(hours=1),
                                                   error_type="SchedulerTimeoutError"))
        entry = db.get_backup_error(test_db, "c1")
        assert entry.error == "second"
        assert entry.error_type == "SchedulerTimeoutError"
        assert entry.timestamp == T0 + datetime.timedelta(hours=1)
        assert db.get_setting(test_db, "backup_error_c1")["error"] == "second"

    def test_missing_error(self, test_db):
        assert db.get_backup_error(test_db, "nope") is None
