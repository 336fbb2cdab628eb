#!/usr/bin/env python3

"""
graph.py

Mail provider gateway for Microsoft Graph (Exchange Online).

Uses aiohttp with an app-only (client credentials) bearer token. Retries on 429
honouring Retry-After; 401/403 surface as ProviderAuthError.
"""

from __future__ import annotations

import asyncio
import base64
import datetime
import email.utils
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
from urllib.parse import quote

import aiohttp

from mailvault.errors import ProviderAuthError, ProviderError
from mailvault.logger import get_logger
from mailvault.models import MailAttachment, MailFolder, MailMessage
from mailvault.utils import from_iso

GRAPH_URL = "https://graph.microsoft.com/v1.0"
TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
REQUEST_TIMEOUT = 60
PAGE_SIZE = 100
DEFAULT_RETRY_AFTER = 5
MAX_RETRY_AFTER = 60

FOLDER_FIELDS = "id,displayName,parentFolderId,childFolderCount,totalItemCount,unreadItemCount"
MESSAGE_FIELDS = (
    "id,subject,from,sender,toRecipients,ccRecipients,bccRecipients,bodyPreview,"
    "receivedDateTime,sentDateTime,isRead,importance,hasAttachments"
)


class MailProvider(Protocol):
    async def list_folders(self, mailbox: str) -> List[MailFolder]: ...

    def list_messages(self, mailbox: str, folder_id: str) -> AsyncIterator[MailMessage]: ...

    async def get_raw_message(self, mailbox: str, message_id: str) -> bytes: ...

    async def list_attachments(self, mailbox: str, message_id: str) -> List[MailAttachment]: ...

    async def download_attachment(self, mailbox: str, message_id: str, attachment_id: str) -> bytes: ...


def _addresses(items: Optional[List[Dict[str, Any]]]) -> List[str]:
    return [
        (r.get("emailAddress") or {}).get("address", "")
        for r in items or []
        if (r.get("emailAddress") or {}).get("address")
    ]


def parse_folder(raw: Dict[str, Any]) -> MailFolder:
    return MailFolder(
        id=raw["id"],
        display_name=raw.get("displayName") or "",
        parent_folder_id=raw.get("parentFolderId"),
        child_folder_count=int(raw.get("childFolderCount") or 0),
        unread_item_count=int(raw.get("unreadItemCount") or 0),
        total_item_count=int(raw.get("totalItemCount") or 0),
    )


def parse_message(raw: Dict[str, Any]) -> MailMessage:
    sender = (raw.get("from") or raw.get("sender") or {}).get("emailAddress") or {}
    return MailMessage(
        id=raw["id"],
        subject=raw.get("subject") or "",
        sender_email=sender.get("address") or "",
        sender_name=sender.get("name") or "",
        to_recipients=_addresses(raw.get("toRecipients")),
        cc_recipients=_addresses(raw.get("ccRecipients")),
        bcc_recipients=_addresses(raw.get("bccRecipients")),
        received_at=from_iso(raw.get("receivedDateTime")),
        sent_at=from_iso(raw.get("sentDateTime")),
        has_attachments=bool(raw.get("hasAttachments")),
        is_read=bool(raw.get("isRead")),
        importance=raw.get("importance") or "normal",
        body_preview=raw.get("bodyPreview") or "",
    )


def parse_attachment(raw: Dict[str, Any]) -> MailAttachment:
    return MailAttachment(
        id=raw["id"],
        name=raw.get("name") or raw["id"],
        content_type=raw.get("contentType") or "application/octet-stream",
        size=int(raw.get("size") or 0),
    )


def parse_retry_after(value: Optional[str]) -> int:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date), capped."""
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        seconds = int(value)
    except ValueError:
        try:
            when = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return DEFAULT_RETRY_AFTER
        if when.tzinfo is None:
            when = when.replace(tzinfo=datetime.timezone.utc)
        seconds = int((when - datetime.datetime.now(datetime.timezone.utc)).total_seconds())
    return min(max(seconds, 0), MAX_RETRY_AFTER)


class GraphMailProvider:
    """Async Microsoft Graph client limited to what a mailbox backup needs."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str) -> None:
        self._tenant_id = tenant_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._session: aiohttp.ClientSession | None = None
        self._token: Optional[str] = None
        self._token_expires = 0.0
        self.logger = get_logger(__name__)

    async def connect(self) -> None:
        if self._session and not self._session.closed:
            return
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT))

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires - 60:
            return self._token
        await self.connect()
        assert self._session is not None
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "scope": "https://graph.microsoft.com/.default",
            "grant_type": "client_credentials",
        }
        try:
            async with self._session.post(TOKEN_URL.format(tenant=self._tenant_id), data=data) as resp:
                payload = await resp.json(content_type=None)
                if resp.status != 200 or "access_token" not in payload:
                    raise ProviderAuthError(payload.get("error_description") or "token request failed", resp.status)
        except aiohttp.ClientError as e:
            raise ProviderAuthError(f"token request failed: {e}") from e
        self._token = payload["access_token"]
        self._token_expires = time.monotonic() + int(payload.get("expires_in", 3600))
        return self._token

    async def _request(self, url: str, params: Optional[Dict[str, Any]] = None, raw: bool = False) -> Any:
        """GET a Graph URL (absolute or relative to GRAPH_URL) with retry on 429/transient errors."""
        if not url.startswith("http"):
            url = f"{GRAPH_URL}{url}"
        await self.connect()
        assert self._session is not None

        max_retries = 3
        for attempt in range(max_retries):
            headers = {"Authorization": f"Bearer {await self._access_token()}"}
            try:
                async with self._session.get(url, params=params, headers=headers) as resp:
                    if resp.status == 429:
                        retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                        self.logger.warning(f"Rate limited by Graph. Retrying after {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue
                    if resp.status in (401, 403):
                        self._token = None
                        raise ProviderAuthError(await resp.text(), resp.status)
                    if resp.status >= 400:
                        raise ProviderError(await resp.text(), resp.status)
                    if raw:
                        return await resp.read()
                    return await resp.json()
            except (TimeoutError, aiohttp.ClientError) as e:
                if attempt < max_retries - 1:
                    self.logger.warning(f"Graph request failed (attempt {attempt + 1}): {e}")
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise ProviderError(f"Request failed after {max_retries} attempts: {e}") from e

        raise ProviderError("Max retries exceeded")

    async def _paged(self, url: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        while url:
            page = await self._request(url, params=params)
            for item in page.get("value", []):
                yield item
            # nextLink already carries the query string
            url = page.get("@odata.nextLink")
            params = None

    async def list_folders(self, mailbox: str) -> List[MailFolder]:
        """Return the whole folder tree, parents before children."""
        user = quote(mailbox)
        folders: List[MailFolder] = []
        pending = [f"/users/{user}/mailFolders"]
        while pending:
            url = pending.pop(0)
            async for raw in self._paged(url, params={"$select": FOLDER_FIELDS, "$top": PAGE_SIZE}):
                folder = parse_folder(raw)
                folders.append(folder)
                if folder.child_folder_count:
                    pending.append(f"/users/{user}/mailFolders/{quote(folder.id)}/childFolders")
        return folders

    async def list_messages(self, mailbox: str, folder_id: str) -> AsyncIterator[MailMessage]:
        url = f"/users/{quote(mailbox)}/mailFolders/{quote(folder_id)}/messages"
        params = {"$select": MESSAGE_FIELDS, "$top": PAGE_SIZE, "$orderby": "receivedDateTime desc"}
        async for raw in self._paged(url, params=params):
            yield parse_message(raw)

    async def get_raw_message(self, mailbox: str, message_id: str) -> bytes:
        return await self._request(f"/users/{quote(mailbox)}/messages/{quote(message_id)}/$value", raw=True)

    async def list_attachments(self, mailbox: str, message_id: str) -> List[MailAttachment]:
        url = f"/users/{quote(mailbox)}/messages/{quote(message_id)}/attachments"
        return [parse_attachment(raw) async for raw in self._paged(url, params={"$select": "id,name,contentType,size"})]

    async def download_attachment(self, mailbox: str, message_id: str, attachment_id: str) -> bytes:
        raw = await self._request(
            f"/users/{quote(mailbox)}/messages/{quote(message_id)}/attachments/{quote(attachment_id)}"
        )
        content = raw.get("contentBytes")
        if not content:
            raise ProviderError(f"Attachment {attachment_id} has no content")
        return base64.b64decode(content)
