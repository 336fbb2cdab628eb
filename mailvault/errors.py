#!/usr/bin/env python3

"""
errors.py

Exception taxonomy for mailvault.

Which of these end a job and which only skip one item is decided by the
boundaries in jobs.py, not by the exceptions themselves.
"""

from __future__ import annotations

from typing import Optional


class MailVaultError(Exception):
    """Base class for all mailvault errors."""


class ProviderError(MailVaultError):
    """Failure while talking to the mail provider."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        if status:
            message = f"Mail provider error {status}: {message}"
        super().__init__(message)


class ProviderAuthError(ProviderError):
    """Authentication failure (token acquisition, 401/403). Always job-fatal."""


class SizeLimitExceeded(MailVaultError):
    """A message or attachment is larger than the configured ceiling."""

    def __init__(self, what: str, size_mb: float, limit_mb: float):
        self.size_mb = size_mb
        self.limit_mb = limit_mb
        super().__init__(f"{what} too large: {size_mb:.2f}MB (limit {limit_mb:.2f}MB)")


class StorageError(MailVaultError):
    """Object storage operation failed."""


class StorageUploadError(StorageError):
    """Uploading an object to storage failed."""


class MetadataWriteError(MailVaultError):
    """Writing a record to the metadata store failed."""


class SchedulerTimeoutError(MailVaultError):
    """A scheduled run gave up waiting for its job to finish."""


class BackupJobFailedError(MailVaultError):
    """A scheduled run observed its backup job ending in 'failed'."""


class JobAlreadyActiveError(MailVaultError):
    """A manual start was refused because the mailbox already has an active job."""

    def __init__(self, mailbox: str, job_id: str):
        self.mailbox = mailbox
        self.job_id = job_id
        super().__init__(f"Mailbox {mailbox} already has an active backup job ({job_id})")


class JobCancelledError(MailVaultError):
    """Raised at a folder/message boundary once a job's cancel token is set."""


class ConcurrentModificationError(MailVaultError):
    """A schedule config row changed between read and write."""


class InvalidScheduleError(MailVaultError):
    """A schedule config carries an unusable trigger expression."""
