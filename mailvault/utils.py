#!/usr/bin/env python3

"""
utils.py

Utility helpers shared across the package:
- filename sanitization
- timestamp parsing / formatting (always UTC)
- sha256 of bytes
- subprocess run wrapper
- signal handler installation for the event loop
"""

from __future__ import annotations

import asyncio
import datetime
import hashlib
import mimetypes
import re
import signal
import subprocess
from pathlib import Path
from typing import Callable, Optional, Union

import unicodedata

from mailvault.logger import get_logger


def sanitize(s: Optional[str]) -> str:
    if not s:
        return "unknown"
    s = unicodedata.normalize("NFKD", s).encode("ascii", "ignore").decode("ascii")
    s = re.sub(r'[<>:"/\\|?*\x00-\x1F]', "_", s)
    s = re.sub(r"\s+", "_", s.strip())
    return s[:80]


def clean_sender(s: Optional[str]) -> str:
    """Reduce a sender name/address to [A-Za-z0-9._-], spaces become underscores."""
    if not s:
        return "unknown"
    s = re.sub(r"[^a-zA-Z0-9\s.-]", "", s)
    s = re.sub(r"\s+", "_", s.strip())
    return s[:50] or "unknown"


def sha256_bytes(data: bytes) -> str:
    """Return SHA256 hexdigest for given bytes."""
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_iso(dt: Optional[datetime.datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Always UTC with microseconds so stored values compare chronologically as strings.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc).isoformat(timespec="microseconds")


def from_iso(s: Optional[str]) -> Optional[datetime.datetime]:
    if not s:
        return None
    cleaned = s.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        dt = datetime.datetime.fromisoformat(cleaned)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def format_ts(dt: datetime.datetime) -> str:
    return dt.astimezone(datetime.timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")


def guess_content_type(filename: str) -> str:
    if filename.lower().endswith(".eml"):
        return "message/rfc822"
    ctype, _ = mimetypes.guess_type(filename)
    return ctype or "application/octet-stream"


def run_cmd(*args: str, check: bool = True, fatal: bool = False, input: Optional[bytes] = None,
            text: bool = True) -> Union[subprocess.CompletedProcess, subprocess.CalledProcessError]:
    """
    Run a command and return CompletedProcess.
    Logs errors (and success at debug) so callers can rely on logs without repeating prints.

    With `text=False` stdout/stderr are bytes and `input` is fed to stdin as-is.
    """
    local_logger = get_logger(__name__)
    local_logger.debug(f"Run command: {' '.join(args)}")
    try:
        cp: subprocess.CompletedProcess = subprocess.run(
            args, check=check, capture_output=True, text=text, input=input
        )
        if cp.returncode < 0:
            local_logger.error(f"Command interrupted: {' '.join(args)}")
            raise KeyboardInterrupt()
        if text:
            local_logger.debug(f"Command succeeded: {' '.join(args)} -> {(cp.stdout or '').strip()[:400]} | {cp.returncode}")
        else:
            local_logger.debug(f"Command succeeded: {' '.join(args)} -> {len(cp.stdout or b'')} bytes | {cp.returncode}")
        return cp
    except subprocess.CalledProcessError as e:
        if e.returncode < 0:
            local_logger.error(f"Command interrupted: {' '.join(args)}")
            raise KeyboardInterrupt()
        stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr or b"").decode("utf-8", "replace")
        local_logger.error(f"Command failed: {' '.join(args)} -> {stderr.strip()}")
        if fatal:
            raise
        return e


def ensure_dirs(*paths: Path) -> None:
    for p in paths:
        p.mkdir(parents=True, exist_ok=True)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, on_interrupt: Callable[[], None]) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_interrupt)
