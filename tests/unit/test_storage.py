#!/usr/bin/env python3
"""
Unit tests for storage.py module (rclone-backed object store).
"""

import asyncio
import json

import pytest

from mailvault.errors import StorageError, StorageUploadError
from mailvault.storage import RcloneObjectStore

REMOTE = "remote:Backups/Mail"


@pytest.fixture
def store():
    return RcloneObjectStore(REMOTE + "/")


def _ok(mocker, stdout=""):
    return mocker.Mock(returncode=0, stdout=stdout, stderr="")


def _fail(mocker):
    return mocker.Mock(returncode=1, stdout="", stderr="boom")


class TestPut:

    def test_rcat_then_moveto(self, mocker, store):
        rcat = mocker.patch("mailvault.storage.rclone_rcat", return_value=_ok(mocker))
        moveto = mocker.patch("mailvault.storage.rclone_moveto", return_value=_ok(mocker))
        delete = mocker.patch("mailvault.storage.rclone_deletefile")

        asyncio.run(store.put("a@example.com/emails/inbox/x.eml", b"mime", "message/rfc822"))

        tmp = rcat.call_args[0][0]
        assert tmp.startswith(f"{REMOTE}/a@example.com/emails/inbox/x.eml.tmp.")
        assert rcat.call_args[0][1] == b"mime"
        moveto.assert_called_once_with(tmp, f"{REMOTE}/a@example.com/emails/inbox/x.eml", check=False)
        delete.assert_not_called()

    def test_rcat_failure_cleans_tmp(self, mocker, store):
        rcat = mocker.patch("mailvault.storage.rclone_rcat", return_value=_fail(mocker))
        moveto = mocker.patch("mailvault.storage.rclone_moveto")
        delete = mocker.patch("mailvault.storage.rclone_deletefile")

        with pytest.raises(StorageUploadError):
            asyncio.run(store.put("k.eml", b"x", "message/rfc822"))

        moveto.assert_not_called()
        delete.assert_called_once_with(rcat.call_args[0][0], check=False)

    def test_moveto_failure_cleans_tmp(self, mocker, store):
        rcat = mocker.patch("mailvault.storage.rclone_rcat", return_value=_ok(mocker))
        mocker.patch("mailvault.storage.rclone_moveto", return_value=_fail(mocker))
        delete = mocker.patch("mailvault.storage.rclone_deletefile")

        with pytest.raises(StorageUploadError, match="moveto"):
            asyncio.run(store.put("k.eml", b"x", "message/rfc822"))

        delete.assert_called_once_with(rcat.call_args[0][0], check=False)


class TestGet:

    def test_returns_bytes(self, mocker, store):
        cat = mocker.patch("mailvault.storage.rclone_cat", return_value=_ok(mocker, b"content"))

        assert asyncio.run(store.get("/k.eml")) == b"content"
        cat.assert_called_once_with(f"{REMOTE}/k.eml", check=False)

    def test_failure_raises(self, mocker, store):
        mocker.patch("mailvault.storage.rclone_cat", return_value=_fail(mocker))

        with pytest.raises(StorageError):
            asyncio.run(store.get("k.eml"))


class TestList:

    def test_keys_relative_to_root(self, mocker, store):
        listing = [
            {"Path": "inbox/a.eml", "Size": 10, "ModTime": "2024-01-01T00:00:00Z", "MimeType": "message/rfc822"},
            {"Path": "inbox/b.eml", "Size": 20},
        ]
        mocker.patch("mailvault.storage.rclone_lsjson", return_value=_ok(mocker, json.dumps(listing)))

        objects = asyncio.run(store.list("a@example.com/emails/"))

        assert [o.key for o in objects] == ["a@example.com/emails/inbox/a.eml", "a@example.com/emails/inbox/b.eml"]
        assert objects[0].size == 10
        assert objects[0].content_type == "message/rfc822"

    def test_failure_raises(self, mocker, store):
        mocker.patch("mailvault.storage.rclone_lsjson", return_value=_fail(mocker))

        with pytest.raises(StorageError):
            asyncio.run(store.list("x"))


class TestDeleteAndHead:

    def test_delete(self, mocker, store):
        delete = mocker.patch("mailvault.storage.rclone_deletefile", return_value=_ok(mocker))

        asyncio.run(store.delete("k.eml"))
        delete.assert_called_once_with(f"{REMOTE}/k.eml", check=False)

    def test_delete_failure_raises(self, mocker, store):
        mocker.patch("mailvault.storage.rclone_deletefile", return_value=_fail(mocker))

        with pytest.raises(StorageError):
            asyncio.run(store.delete("k.eml"))

    def test_head(self, mocker, store):
        entry = {"Path": "k.eml", "Size": 42, "MimeType": "message/rfc822"}
        mocker.patch("mailvault.storage.rclone_lsjson", return_value=_ok(mocker, json.dumps(entry)))

        obj = asyncio.run(store.head("k.eml"))
        assert obj.key == "k.eml"
        assert obj.size == 42

    def test_head_missing(self, mocker, store):
        mocker.patch("mailvault.storage.rclone_lsjson", return_value=_fail(mocker))
        assert asyncio.run(store.head("k.eml")) is None
