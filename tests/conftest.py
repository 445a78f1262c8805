"""
Pytest configuration and fixtures.
"""

import shutil
import tempfile
from pathlib import Path

import pytest


@pytest.fixture
def short_tmp():
    """
    Provide a short temporary directory.

    Unix socket paths are limited to ~108 bytes, which pytest's tmp_path
    easily exceeds.
    """
    path = Path(tempfile.mkdtemp(prefix="rce-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(short_tmp):
    """Provide test settings rooted in a throwaway workspace."""
    from rce_engine.config import (
        Settings,
        WorkspaceSettings,
        BrowserSettings,
        RecorderSettings,
        LifecycleSettings,
    )

    return Settings(
        workspace=WorkspaceSettings(work_dir=str(short_tmp)),
        browser=BrowserSettings(headless=True),
        recorder=RecorderSettings(url="http://localhost:3000", durable_writes=False),
        lifecycle=LifecycleSettings(
            kill_grace_ms=10,
            release_poll_attempts=2,
            release_poll_interval_ms=10,
            restart_settle_ms=0,
        ),
    )


@pytest.fixture
def workspace(settings):
    """Provide a Workspace for the test settings."""
    from rce_engine.session import Workspace

    return Workspace.from_settings(settings)


@pytest.fixture
def socket_path(short_tmp):
    """Provide a control socket path that fits the Unix socket limit."""
    return short_tmp / "control.sock"
