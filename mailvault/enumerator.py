#!/usr/bin/env python3

"""
enumerator.py

Folder selection and message enumeration.

Folder filter precedence: a non-empty include list wins outright and the exclude
list is then ignored; only without includes are excludes applied. Matching is a
case-insensitive substring test on the display name.
"""

from __future__ import annotations

from typing import AsyncIterator, Iterable, List, Optional, Sequence

from mailvault.graph import MailProvider
from mailvault.models import MailFolder, MailMessage


def _matches(folder: MailFolder, terms: Iterable[str]) -> bool:
    name = (folder.display_name or "").lower()
    return any(term.lower() in name for term in terms)


def filter_folders(
        folders: Sequence[MailFolder],
        include_folders: Optional[Sequence[str]] = None,
        exclude_folders: Optional[Sequence[str]] = None,
) -> List[MailFolder]:
    if include_folders:
        return [f for f in folders if _matches(f, include_folders)]
    if exclude_folders:
        return [f for f in folders if not _matches(f, exclude_folders)]
    return list(folders)


async def select_folders(
        provider: MailProvider,
        mailbox: str,
        include_folders: Optional[Sequence[str]] = None,
        exclude_folders: Optional[Sequence[str]] = None,
) -> List[MailFolder]:
    folders = await provider.list_folders(mailbox)
    return filter_folders(folders, include_folders, exclude_folders)


async def count_messages(provider: MailProvider, mailbox: str, folder: MailFolder) -> int:
    """Count a folder's messages by walking the listing (no content is fetched)."""
    total = 0
    async for _ in provider.list_messages(mailbox, folder.id):
        total += 1
    return total


def iter_messages(provider: MailProvider, mailbox: str, folder: MailFolder) -> AsyncIterator[MailMessage]:
    """Messages of one folder in whatever order the provider returns them."""
    return provider.list_messages(mailbox, folder.id)
