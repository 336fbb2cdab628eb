#!/usr/bin/env python3

"""
fetcher.py

Deduplication filter and content fetcher with size gate.

The dedup check and the later record insert are separate steps: two jobs on the
same mailbox can both pass the check for one message and upload it twice. The
UNIQUE(mailbox, message_id) constraint still keeps a single record.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from mailvault import db
from mailvault.errors import ProviderError, SizeLimitExceeded
from mailvault.graph import MailProvider
from mailvault.logger import get_logger

MB = 1024 * 1024


async def is_backed_up(db_path: Path, mailbox: str, message_id: str) -> bool:
    """True when a MessageRecord already exists for (mailbox, message_id)."""
    record = await asyncio.to_thread(db.find_message, db_path, mailbox, message_id)
    return record is not None


def check_size(size_bytes: int, limit_mb: Optional[float], what: str = "Email") -> None:
    """
    Raise SizeLimitExceeded when `size_bytes` is strictly above `limit_mb` megabytes.

    A falsy limit disables the check; a size exactly at the limit is accepted.
    """
    if not limit_mb:
        return
    size_mb = size_bytes / MB
    if size_mb > limit_mb:
        raise SizeLimitExceeded(what, size_mb, limit_mb)


async def fetch_message_content(provider: MailProvider, mailbox: str, message_id: str,
                                max_email_size: Optional[float]) -> bytes:
    """Fetch raw MIME content for one message and apply the size gate."""
    content = await provider.get_raw_message(mailbox, message_id)
    if not content:
        raise ProviderError(f"No content returned for message {message_id}")
    check_size(len(content), max_email_size)
    return content


def attachment_too_large(name: str, size_bytes: int, max_attachment_size: int) -> bool:
    """Attachments are dropped (not failed) above the hard ceiling."""
    if size_bytes > max_attachment_size:
        get_logger(__name__).warning(
            f"Attachment too large: {name} ({size_bytes} bytes, limit {max_attachment_size}), skipping"
        )
        return True
    return False
