#!/usr/bin/env python3

"""
uploader.py

Upload of accepted message content and attachments, and their metadata records:
- derive a deterministic storage key
- put the object into storage
- insert the MessageRecord (backup_status = completed)
- per attachment: size gate, download, put, upsert AttachmentRecord
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

from mailvault import db
from mailvault.errors import (
    MetadataWriteError,
    ProviderAuthError,
    ProviderError,
    StorageError,
    StorageUploadError,
)
from mailvault.fetcher import attachment_too_large
from mailvault.graph import MailProvider
from mailvault.logger import get_logger
from mailvault.models import AttachmentRecord, MailAttachment, MailFolder, MailMessage, MessageRecord
from mailvault.storage import ObjectStore
from mailvault.utils import clean_sender, format_ts, guess_content_type, sanitize, sha256_bytes, utcnow


def email_storage_key(mailbox: str, folder_id: str, message: MailMessage) -> str:
    """
    <mailbox>/emails/<folder>/<sent-ts>_<sender>_[<short>].eml, or
    <mailbox>/emails/<folder>/<message-id>.eml when date or sender is missing.

    The short hash of the message id keeps two mails from one sender in the same
    second apart.
    """
    base = f"{mailbox}/emails/{sanitize(folder_id)}"
    sent = message.sent_at or message.received_at
    if sent and message.sender_email:
        sender = clean_sender(message.sender_name or message.sender_email)
        short = sha256_bytes(message.id.encode("utf-8"))[:6]
        return f"{base}/{format_ts(sent)}_{sender}_[{short}].eml"
    return f"{base}/{sanitize(message.id)}.eml"


def attachment_storage_key(mailbox: str, message_id: str, attachment: MailAttachment) -> str:
    return f"{mailbox}/attachments/{sanitize(message_id)}/{sanitize(attachment.id)}_{sanitize(attachment.name)}"


class MessageUploader:
    def __init__(self, storage: ObjectStore, provider: MailProvider, db_path: Path, max_attachment_size: int):
        self.storage = storage
        self.provider = provider
        self.db_path = db_path
        self.max_attachment_size = max_attachment_size
        self.logger = get_logger(__name__)

    async def upload_message(self, mailbox: str, folder: MailFolder, message: MailMessage,
                             content: bytes) -> MessageRecord:
        """
        Store `content` and record it. Raises StorageUploadError or MetadataWriteError.
        """
        key = email_storage_key(mailbox, folder.id, message)
        try:
            await self.storage.put(key, content, "message/rfc822")
        except StorageUploadError:
            raise
        except StorageError as e:
            raise StorageUploadError(str(e)) from e

        record = MessageRecord(
            mailbox=mailbox,
            message_id=message.id,
            folder_id=folder.id,
            subject=message.subject,
            sender_email=message.sender_email,
            sender_name=message.sender_name,
            recipients=list(message.to_recipients),
            cc_recipients=list(message.cc_recipients),
            bcc_recipients=list(message.bcc_recipients),
            body_preview=message.body_preview,
            received_date=message.received_at,
            sent_date=message.sent_at,
            is_read=message.is_read,
            importance=message.importance,
            has_attachments=message.has_attachments,
            size_bytes=len(content),
            storage_key=key,
            backup_status="completed",
            backup_date=utcnow(),
        )
        record.id = await asyncio.to_thread(db.insert_message, self.db_path, record)
        self.logger.debug(f"Message {message.id} stored at {key}")
        return record

    async def upload_attachments(self, mailbox: str, message: MailMessage,
                                 record: MessageRecord) -> List[AttachmentRecord]:
        """
        Best-effort: an attachment that is too large or fails is logged and skipped
        without failing the parent message.
        """
        stored: List[AttachmentRecord] = []
        try:
            attachments = await self.provider.list_attachments(mailbox, message.id)
        except ProviderAuthError:
            raise
        except ProviderError as e:
            self.logger.error(f"Attachments backup error for message {message.id}: {e}")
            return stored
        for attachment in attachments:
            try:
                rec = await self._upload_attachment(mailbox, message, record, attachment)
            except ProviderAuthError:
                raise
            except (ProviderError, StorageError, MetadataWriteError) as e:
                self.logger.error(f"Attachment backup error for {attachment.name}: {e}")
                continue
            if rec is not None:
                stored.append(rec)
        return stored

    async def _upload_attachment(self, mailbox: str, message: MailMessage, record: MessageRecord,
                                 attachment: MailAttachment) -> Optional[AttachmentRecord]:
        if attachment_too_large(attachment.name, attachment.size, self.max_attachment_size):
            return None
        data = await self.provider.download_attachment(mailbox, message.id, attachment.id)
        if not data:
            return None
        if attachment_too_large(attachment.name, len(data), self.max_attachment_size):
            return None

        key = attachment_storage_key(mailbox, message.id, attachment)
        await self.storage.put(key, data, attachment.content_type or guess_content_type(attachment.name))
        rec = AttachmentRecord(
            attachment_id=attachment.id,
            message_row_id=record.id,
            filename=attachment.name,
            content_type=attachment.content_type,
            size=len(data),
            storage_key=key,
            backup_date=utcnow(),
        )
        await asyncio.to_thread(db.upsert_attachment, self.db_path, rec)
        return rec
