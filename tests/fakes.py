#!/usr/bin/env python3
"""
In-memory fakes of the mail provider, the object store and an rclone remote used across the tests.
"""

import asyncio
import datetime
import json
import subprocess
from typing import Dict, List, Optional, Set

from mailvault.errors import ProviderError, StorageError, StorageUploadError
from mailvault.models import MailAttachment, MailFolder, MailMessage, StoredObject

T0 = datetime.datetime(2024, 1, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def make_message(msg_id: str, minutes: int = 0, sender: str = "alice@example.com", name: str = "Alice",
                 has_attachments: bool = False) -> MailMessage:
    ts = T0 + datetime.timedelta(minutes=minutes)
    return MailMessage(
        id=msg_id,
        subject=f"Subject {msg_id}",
        sender_email=sender,
        sender_name=name,
        to_recipients=["bob@example.com"],
        received_at=ts,
        sent_at=ts,
        has_attachments=has_attachments,
    )


class FakeMailProvider:
    """In-memory mail provider: folders by display name, raw content by message id."""

    def __init__(self, folders: Optional[Dict[str, List[MailMessage]]] = None):
        self.folders: List[MailFolder] = []
        self.messages: Dict[str, List[MailMessage]] = {}
        self.raw: Dict[str, bytes] = {}
        self.attachments: Dict[str, List[MailAttachment]] = {}
        self.attachment_data: Dict[str, bytes] = {}
        self.fail_raw: Dict[str, Exception] = {}
        self.fail_folders: Optional[Exception] = None
        self.hang: Optional[asyncio.Event] = None

        self.raw_calls: List[str] = []
        self.list_message_calls = 0
        for name, msgs in (folders or {}).items():
            self.add_folder(name, msgs)

    def add_folder(self, name: str, messages: List[MailMessage]) -> MailFolder:
        folder = MailFolder(id=f"fld-{name.lower()}", display_name=name, total_item_count=len(messages))
        self.folders.append(folder)
        self.messages[folder.id] = list(messages)
        for m in messages:
            self.raw.setdefault(m.id, f"Subject: {m.subject}\r\n\r\nbody of {m.id}\r\n".encode())
        return folder

    async def list_folders(self, mailbox: str) -> List[MailFolder]:
        if self.hang is not None:
            await self.hang.wait()
        if self.fail_folders is not None:
            raise self.fail_folders
        return list(self.folders)

    async def list_messages(self, mailbox: str, folder_id: str):
        self.list_message_calls += 1
        for m in self.messages.get(folder_id, []):
            yield m

    async def get_raw_message(self, mailbox: str, message_id: str) -> bytes:
        self.raw_calls.append(message_id)
        if message_id in self.fail_raw:
            raise self.fail_raw[message_id]
        return self.raw.get(message_id, b"")

    async def list_attachments(self, mailbox: str, message_id: str) -> List[MailAttachment]:
        return list(self.attachments.get(message_id, []))

    async def download_attachment(self, mailbox: str, message_id: str, attachment_id: str) -> bytes:
        if attachment_id not in self.attachment_data:
            raise ProviderError(f"attachment {attachment_id} not found", 404)
        return self.attachment_data[attachment_id]


class FakeObjectStore:
    """In-memory object store with call recording and failure injection."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.put_calls: List[str] = []
        self.deleted: List[str] = []
        self.fail_put: Set[str] = set()
        self.fail_delete: Set[str] = set()
        self.fail_get: Set[str] = set()

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        self.put_calls.append(key)
        if key in self.fail_put or any(key.endswith(s) for s in self.fail_put):
            raise StorageUploadError(f"upload failed for {key}")
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type

    async def get(self, key: str) -> bytes:
        if key in self.fail_get or key not in self.objects:
            raise StorageError(f"Failed to download {key}")
        return self.objects[key]

    async def list(self, prefix: str) -> List[StoredObject]:
        return [StoredObject(key=k, size=len(v)) for k, v in sorted(self.objects.items()) if k.startswith(prefix)]

    async def delete(self, key: str) -> None:
        if key in self.fail_delete:
            raise StorageError(f"Failed to delete {key}")
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def head(self, key: str) -> Optional[StoredObject]:
        if key not in self.objects:
            return None
        return StoredObject(key=key, size=len(self.objects[key]), content_type=self.content_types.get(key))


class FakeRcloneRemote:
    """
    Answers rclone command lines (as passed to run_cmd) from an in-memory file map,
    so the real RcloneObjectStore can be exercised end to end.
    """

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.commands: List[List[str]] = []

    def __call__(self, *cmd: str, check: bool = True, fatal: bool = False, input: Optional[bytes] = None,
                 text: bool = True) -> subprocess.CompletedProcess:
        flags = [a for a in cmd[1:] if a.startswith("--")]
        verb, *args = [a for a in cmd[1:] if not a.startswith("--")]
        self.commands.append([verb, *args])
        handler = getattr(self, f"_{verb}")
        code, out = handler(args, flags, input)
        if not text and isinstance(out, str):
            out = out.encode()
        return subprocess.CompletedProcess(list(cmd), code, stdout=out, stderr="")

    def _rcat(self, args, flags, data):
        self.files[args[0]] = bytes(data or b"")
        return 0, ""

    def _moveto(self, args, flags, data):
        if args[0] not in self.files:
            return 1, ""
        self.files[args[1]] = self.files.pop(args[0])
        return 0, ""

    def _cat(self, args, flags, data):
        if args[0] not in self.files:
            return 1, b""
        return 0, self.files[args[0]]

    def _deletefile(self, args, flags, data):
        if self.files.pop(args[0], None) is None:
            return 1, ""
        return 0, ""

    def _lsjson(self, args, flags, data):
        path = args[0]
        if "--stat" in flags:
            if path not in self.files:
                return 1, ""
            return 0, json.dumps({"Path": path.rsplit("/", 1)[-1], "Size": len(self.files[path])})
        prefix = path.rstrip("/") + "/"
        entries = [{"Path": k[len(prefix):], "Size": len(v)} for k, v in sorted(self.files.items())
                   if k.startswith(prefix)]
        return 0, json.dumps(entries)
