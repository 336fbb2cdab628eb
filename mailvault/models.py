#!/usr/bin/env python3

"""
models.py

Plain data types shared across the package: job/schedule records as stored in
SQLite and the provider-side views of folders, messages and attachments.
"""

from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class BackupKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class BackupOptions:
    """Parameters of a single backup run."""
    mailbox: str
    kind: BackupKind = BackupKind.FULL
    start_date: Optional[datetime.datetime] = None
    end_date: Optional[datetime.datetime] = None
    include_folders: List[str] = field(default_factory=list)
    exclude_folders: List[str] = field(default_factory=list)
    include_attachments: bool = True
    # MB; None disables the message size gate
    max_email_size: Optional[float] = None


@dataclass
class BackupJob:
    id: str
    mailbox: str
    kind: BackupKind
    status: JobStatus
    start_date: Optional[datetime.datetime]
    end_date: Optional[datetime.datetime]
    total_emails: int = 0
    processed_emails: int = 0
    failed_emails: int = 0
    processed_bytes: int = 0
    current_folder: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime.datetime] = None
    completed_at: Optional[datetime.datetime] = None


@dataclass
class MailFolder:
    id: str
    display_name: str
    parent_folder_id: Optional[str] = None
    child_folder_count: int = 0
    unread_item_count: int = 0
    total_item_count: int = 0


@dataclass
class MailMessage:
    """Message metadata as listed by the provider (no content)."""
    id: str
    subject: str = ""
    sender_email: str = ""
    sender_name: str = ""
    to_recipients: List[str] = field(default_factory=list)
    cc_recipients: List[str] = field(default_factory=list)
    bcc_recipients: List[str] = field(default_factory=list)
    received_at: Optional[datetime.datetime] = None
    sent_at: Optional[datetime.datetime] = None
    has_attachments: bool = False
    is_read: bool = False
    importance: str = "normal"
    body_preview: str = ""


@dataclass
class MailAttachment:
    id: str
    name: str
    content_type: str = "application/octet-stream"
    size: int = 0


@dataclass
class MessageRecord:
    mailbox: str
    message_id: str
    storage_key: str
    backup_date: datetime.datetime
    folder_id: Optional[str] = None
    subject: str = ""
    sender_email: str = ""
    sender_name: str = ""
    recipients: List[str] = field(default_factory=list)
    cc_recipients: List[str] = field(default_factory=list)
    bcc_recipients: List[str] = field(default_factory=list)
    received_date: Optional[datetime.datetime] = None
    sent_date: Optional[datetime.datetime] = None
    is_read: bool = False
    importance: str = "normal"
    has_attachments: bool = False
    body_preview: str = ""
    size_bytes: int = 0
    backup_status: str = "completed"
    id: Optional[int] = None


@dataclass
class AttachmentRecord:
    attachment_id: str
    message_row_id: int
    filename: str
    content_type: str
    size: int
    storage_key: str
    backup_date: datetime.datetime
    backup_status: str = "completed"
    id: Optional[int] = None


@dataclass
class ScheduleConfig:
    mailbox: str
    cron_expression: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    is_active: bool = True
    backup_kind: BackupKind = BackupKind.INCREMENTAL
    retention_days: int = 30
    include_attachments: bool = True
    max_email_size: Optional[float] = None
    zip_enabled: bool = False
    last_run: Optional[datetime.datetime] = None
    next_run: Optional[datetime.datetime] = None
    # optimistic concurrency counter, bumped by every save
    version: int = 0


@dataclass
class ErrorLogEntry:
    config_id: str
    error: str
    timestamp: datetime.datetime
    error_type: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "error_type": self.error_type,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StoredObject:
    key: str
    size: int
    modified: Optional[str] = None
    content_type: Optional[str] = None
