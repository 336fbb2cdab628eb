#!/usr/bin/env python3
"""
Shared pytest fixtures and configuration for mailvault tests.
"""

import pytest

from mailvault import config, db

from tests.fakes import FakeMailProvider, FakeObjectStore, make_message

Settings = config.Settings
ensure_schema = db.ensure_schema


@pytest.fixture
def test_db(tmp_path):
    """Create a test database with schema initialized."""
    db_path = tmp_path / "test.db"
    ensure_schema(db_path)
    return db_path


@pytest.fixture
def test_settings(tmp_path):
    """Create a Settings object with test paths."""
    s = Settings(
        db_path=tmp_path / "state.db",
        log_path=tmp_path / "test.log",
        tmp_dir=tmp_path / "tmp",
        remote="test-remote:Backups/Mail",
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        timezone="UTC",
        job_timeout=10,
        job_poll_interval=1,
        temp_cleanup_cron="0 2 * * *",
        max_config_conflict_retries=3,
        max_overlapping_runs=3,
        default_max_email_size=25.0,
        max_attachment_size=1024,
        max_finished_progress=100,
        log_level="DEBUG",
        status_interval=10,
        rotate_by_time=False,
        max_log_files=3,
        max_log_size=1024 * 1024,
        rclone_log_level="INFO",
        rclone_transfers=4,
        rclone_multi_thread_streams=2,
    )
    ensure_schema(s.db_path)
    return s


@pytest.fixture
def fake_provider():
    return FakeMailProvider({
        "Inbox": [make_message("in-1", 1), make_message("in-2", 2), make_message("in-3", 3)],
        "Archive": [make_message("ar-1", 4, sender="carol@example.com", name="Carol"), make_message("ar-2", 5)],
    })


@pytest.fixture
def fake_store():
    return FakeObjectStore()


@pytest.fixture
def mock_rclone(mocker):
    """Mock rclone command calls."""
    mock_run = mocker.patch("mailvault.utils.run_cmd")
    mock_run.return_value = mocker.Mock(
        returncode=0,
        stdout="",
        stderr=""
    )
    return mock_run
