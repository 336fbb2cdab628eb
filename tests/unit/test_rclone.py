#!/usr/bin/env python3
"""
Unit tests for rclone.py module.
"""

from mailvault import rclone
from mailvault.rclone import (
    rclone_cat,
    rclone_deletefile,
    rclone_lsjson,
    rclone_moveto,
    rclone_rcat,
    set_rclone_defaults,
)


class TestSetRcloneDefaults:
    """Tests for set_rclone_defaults function."""

    def test_set_rclone_defaults(self):
        set_rclone_defaults(log_level="DEBUG", transfers=8, multi_thread_streams=4)

        assert "--log-level=DEBUG" in rclone.RCLONE_BASE
        assert "--transfers=8" in rclone.RCLONE_BASE
        assert "--multi-thread-streams=4" in rclone.RCLONE_BASE

    def test_set_rclone_defaults_default_values(self):
        set_rclone_defaults()
        assert rclone.RCLONE_BASE[0] == "rclone"


class TestRunRclone:
    """_run_rclone prefixes the base arguments and forwards to run_cmd."""

    def test_prefixes_base(self, mock_rclone):
        set_rclone_defaults(log_level="INFO", transfers=4, multi_thread_streams=2)

        rclone_deletefile("remote:/path/file.txt")

        args = mock_rclone.call_args[0]
        assert args[:4] == ("rclone", "--log-level=INFO", "--transfers=4", "--multi-thread-streams=2")
        assert args[4:] == ("deletefile", "remote:/path/file.txt")
        assert mock_rclone.call_args[1]["check"] is True

    def test_check_false_forwarded(self, mock_rclone):
        mock_rclone.return_value.returncode = 1

        result = rclone_deletefile("remote:/missing", check=False)

        assert mock_rclone.call_args[1]["check"] is False
        assert result.returncode == 1


class TestRcloneRcat:
    """Tests for rclone_rcat function."""

    def test_streams_bytes(self, mocker):
        mock_run = mocker.patch("mailvault.rclone._run_rclone")
        rclone_rcat("remote:/a.eml", b"payload")

        args = mock_run.call_args[0]
        kwargs = mock_run.call_args[1]
        assert args == ("rcat", "remote:/a.eml")
        assert kwargs["input"] == b"payload"
        assert kwargs["text"] is False


class TestRcloneMoveto:
    """Tests for rclone_moveto function."""

    def test_rclone_moveto_command(self, mocker):
        mock_run = mocker.patch("mailvault.rclone._run_rclone")
        mock_run.return_value = mocker.Mock(returncode=0, stdout="", stderr="")

        rclone_moveto("remote:/old.txt", "remote:/new.txt")

        args = mock_run.call_args[0]
        assert "moveto" in args
        assert "remote:/old.txt" in args
        assert "remote:/new.txt" in args


class TestRcloneCat:
    """Tests for rclone_cat function."""

    def test_rclone_cat_returns_bytes(self, mocker):
        mock_run = mocker.patch("mailvault.rclone._run_rclone")
        mock_run.return_value = mocker.Mock(returncode=0, stdout=b"file contents", stderr=b"")

        result = rclone_cat("remote:/path/file.txt")

        assert mock_run.call_args[0] == ("cat", "remote:/path/file.txt")
        assert mock_run.call_args[1]["text"] is False
        assert result.stdout == b"file contents"


class TestRcloneLsjson:
    """Tests for rclone_lsjson function."""

    def test_rclone_lsjson_command(self, mocker):
        mock_run = mocker.patch("mailvault.rclone._run_rclone")
        mock_run.return_value = mocker.Mock(
            returncode=0,
            stdout='[{"Path": "file.txt", "Size": 100}]',
            stderr=""
        )

        result = rclone_lsjson("remote:/path", "--recursive")

        args = mock_run.call_args[0]
        assert args == ("lsjson", "remote:/path", "--recursive")
        assert "file.txt" in result.stdout
