# mailvault/rclone.py
from __future__ import annotations

from typing import Optional

# Default arguments for all rclone calls
RCLONE_BASE = ["rclone", "--log-level=INFO"]


def _run_rclone(*args: str, check: bool = True, input: Optional[bytes] = None, text: bool = True):
    """Low-level helper that executes rclone with consistent defaults."""
    from mailvault.utils import run_cmd
    cmd = RCLONE_BASE + [str(a) for a in args]
    return run_cmd(*cmd, check=check, input=input, text=text)


def set_rclone_defaults(log_level="INFO", transfers=4, multi_thread_streams=4):
    global RCLONE_BASE
    RCLONE_BASE = [
        "rclone",
        f"--log-level={log_level}",
        f"--transfers={transfers}",
        f"--multi-thread-streams={multi_thread_streams}",
    ]


# --------------------------
# Core command wrappers
# --------------------------

def rclone_rcat(remote_path: str, data: bytes, check: bool = True):
    """Stream bytes from stdin into a single remote file."""
    return _run_rclone("rcat", remote_path, check=check, input=data, text=False)


def rclone_moveto(src: str, dst: str, *extra: str, check: bool = True):
    """Move file atomically on remote."""
    return _run_rclone("moveto", src, dst, *extra, check=check)


def rclone_cat(remote_path: str, check: bool = True):
    """Return file contents from remote (stdout, bytes)."""
    return _run_rclone("cat", remote_path, check=check, text=False)


def rclone_deletefile(remote_path: str, check: bool = True):
    """Delete a single remote file."""
    return _run_rclone("deletefile", remote_path, check=check)


def rclone_lsjson(remote_path: str, *extra: str, check: bool = True):
    """List remote files as JSON."""
    return _run_rclone("lsjson", remote_path, *extra, check=check)
