#!/usr/bin/env python3

"""
mailvault
Scheduled, deduplicating backup of remote mailboxes into object storage.

Messages and attachments are pulled from the mail provider, uploaded via rclone,
recorded in SQLite and optionally bundled into daily archives.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "utils",
    "db",
    "models",
    "errors",
    "logger",
    "rclone",
    "storage",
    "graph",
    "cancellation",
    "progress",
    "enumerator",
    "fetcher",
    "uploader",
    "jobs",
    "scheduler",
    "archiver",
    "retention",
]
