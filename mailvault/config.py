#!/usr/bin/env python3

"""
config.py

Configuration loading for the mailvault package.

Supports:
- TOML (preferred) using stdlib tomllib
- INI using configparser (section [mailvault])

Precedence:
1. CLI --config <path>
2. ./mailvault.toml
3. ./mailvault.ini
4. ~/.config/mailvault.toml
5. ~/.config/mailvault.ini
6. /etc/mailvault.toml
7. /etc/mailvault.ini
"""

from __future__ import annotations

import configparser
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class Settings:
    # Core paths
    db_path: Path
    log_path: Path
    tmp_dir: Path

    # Object storage (rclone remote incl. base path)
    remote: str

    # Mail provider (Microsoft Graph, client credentials)
    tenant_id: str
    client_id: str
    client_secret: str

    # Scheduler
    timezone: str
    job_timeout: int
    job_poll_interval: int
    temp_cleanup_cron: str
    max_config_conflict_retries: int
    max_overlapping_runs: int

    # Backup policy
    default_max_email_size: float
    max_attachment_size: int
    max_finished_progress: int

    # Logging
    log_level: str
    status_interval: int
    rotate_by_time: bool
    max_log_files: int
    max_log_size: int

    # rclone
    rclone_log_level: str
    rclone_transfers: int
    rclone_multi_thread_streams: int

    @property
    def archive_tmp_dir(self) -> Path:
        return self.tmp_dir / "archives"


DEFAULT_LOCATIONS = [
    Path("./mailvault.toml"),
    Path("./mailvault.ini"),
    Path(os.path.expanduser("~/.config/mailvault.toml")),
    Path(os.path.expanduser("~/.config/mailvault.ini")),
    Path("/etc/mailvault.toml"),
    Path("/etc/mailvault.ini"),
]


def _load_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _load_ini(path: Path) -> Dict[str, Any]:
    cp = configparser.ConfigParser()
    cp.read(path)
    data: Dict[str, Any] = {}

    section = "mailvault"
    if section not in cp:
        raise RuntimeError(f"INI config {path} must have a [{section}] section")

    sec = cp[section]
    for k in sec:
        data[k] = sec[k]
    return data


def _coerce_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


def _coerce_int(v: Any, default: int) -> int:
    if v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _coerce_float(v: Any, default: float) -> float:
    if v is None:
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def load_settings(config_path: Optional[Path] = None) -> Settings:
    data: Dict[str, Any] = {}

    source_path: Optional[Path] = None

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        source_path = config_path
    else:
        for p in DEFAULT_LOCATIONS:
            if p.exists():
                source_path = p
                break

    if source_path is None:
        sys.stderr.write(
            "Warning: no config file found. Using built-in defaults.\n"
        )
    else:
        if source_path.suffix.lower() == ".toml":
            data = _load_toml(source_path)
        else:
            data = _load_ini(source_path)

    # Accept either flat keys or [section] sub-tables
    def pick(*keys: str, default: Any = None) -> Any:
        for k in keys:
            if k in data:
                return data[k]
        for k in keys:
            parts = k.split(".")
            if len(parts) == 2:
                top, sub = parts
                if top in data and isinstance(data[top], dict):
                    if sub in data[top]:
                        return data[top][sub]
        return default

    db_path = Path(pick("db_path", "paths.db_path", default="/srv/mailvault/state.db"))
    log_path = Path(pick("log_path", "paths.log_path", default="/var/log/mailvault/mailvault.log"))
    tmp_dir = Path(pick("tmp_dir", "paths.tmp_dir", default="/srv/mailvault/tmp"))
    remote = str(pick("remote", "storage.remote", default="idrive:exchange-backups")).rstrip("/")

    tenant_id = str(pick("tenant_id", "provider.tenant_id", default=""))
    client_id = str(pick("client_id", "provider.client_id", default=""))
    client_secret = str(
        pick("client_secret", "provider.client_secret", default=os.environ.get("MAILVAULT_CLIENT_SECRET", ""))
    )

    timezone = str(pick("timezone", "scheduler.timezone", default="Europe/Istanbul"))
    job_timeout = _coerce_int(pick("job_timeout", "scheduler.job_timeout", default=7200), 7200)
    job_poll_interval = _coerce_int(pick("job_poll_interval", "scheduler.job_poll_interval", default=5), 5)
    temp_cleanup_cron = str(pick("temp_cleanup_cron", "scheduler.temp_cleanup_cron", default="0 2 * * *"))
    max_config_conflict_retries = _coerce_int(
        pick("max_config_conflict_retries", "scheduler.max_config_conflict_retries", default=3), 3
    )
    max_overlapping_runs = _coerce_int(pick("max_overlapping_runs", "scheduler.max_overlapping_runs", default=3), 3)

    default_max_email_size = _coerce_float(
        pick("default_max_email_size", "backup.default_max_email_size", default=25), 25.0
    )
    max_attachment_size = _coerce_int(
        pick("max_attachment_size", "backup.max_attachment_size", default=25 * 1024 * 1024), 25 * 1024 * 1024
    )
    max_finished_progress = _coerce_int(pick("max_finished_progress", "backup.max_finished_progress", default=100), 100)

    log_level = str(pick("log_level", "logging.log_level", default="INFO")).upper()
    status_interval = _coerce_int(pick("status_interval", "logging.status_interval", default=300), 300)
    rotate_by_time = _coerce_bool(pick("rotate_by_time", "logging.rotate_by_time", default=True), True)
    max_log_files = _coerce_int(pick("max_log_files", "logging.max_log_files", default=7), 7)
    max_log_size = _coerce_int(pick("max_log_size", "logging.max_log_size", default=50 * 1024 * 1024),
                               50 * 1024 * 1024)

    rclone_log_level = str(pick("rclone_log_level", "rclone.log_level", default="INFO"))
    rclone_transfers = _coerce_int(pick("rclone_transfers", "rclone.transfers", default=8), 8)
    rclone_multi_thread_streams = _coerce_int(
        pick("rclone_multi_thread_streams", "rclone.multi_thread_streams", default=4), 4)

    from mailvault.rclone import set_rclone_defaults

    set_rclone_defaults(rclone_log_level, rclone_transfers, rclone_multi_thread_streams)

    return Settings(
        db_path=db_path,
        log_path=log_path,
        tmp_dir=tmp_dir,
        remote=remote,
        tenant_id=tenant_id,
        client_id=client_id,
        client_secret=client_secret,
        timezone=timezone,
        job_timeout=job_timeout,
        job_poll_interval=job_poll_interval,
        temp_cleanup_cron=temp_cleanup_cron,
        max_config_conflict_retries=max_config_conflict_retries,
        max_overlapping_runs=max_overlapping_runs,
        default_max_email_size=default_max_email_size,
        max_attachment_size=max_attachment_size,
        max_finished_progress=max_finished_progress,
        log_level=log_level,
        status_interval=status_interval,
        rotate_by_time=rotate_by_time,
        max_log_files=max_log_files,
        max_log_size=max_log_size,
        rclone_log_level=rclone_log_level,
        rclone_transfers=rclone_transfers,
        rclone_multi_thread_streams=rclone_multi_thread_streams,
    )
