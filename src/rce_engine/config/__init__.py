"""
Configuration module - settings for the recorder and the CLI.

Every ``rce`` invocation resolves its settings for one project directory
(``RCE_WORK_DIR`` or the current directory): defaults, then the project's
``rce.config.yaml``, then ``RCE__SECTION__KEY`` environment variables (a
``.env`` in the project is loaded first), then command-line options.

Example rce.config.yaml:
    recorder:
      url: http://localhost:5173
      server_cmd: npm run dev
      boot_wait_ms: 3000
    browser:
      headless: false
    lifecycle:
      port: 5173

Environment Variables:
    RCE_WORK_DIR=/path/to/project
    RCE__RECORDER__URL=http://localhost:5173
    RCE__BROWSER__HEADLESS=true
    RCE__CONTROL__REQUEST_TIMEOUT_S=60
"""

from rce_engine.config.settings import (
    Settings,
    WorkspaceSettings,
    BrowserSettings,
    RecorderSettings,
    ControlSettings,
    LifecycleSettings,
    LoggingSettings,
)
from rce_engine.config.loader import ConfigLoader, load_config, project_dir

_settings: Settings | None = None


def get_settings() -> Settings:
    """Settings of the current project, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_config()
    return _settings


def reset_settings() -> None:
    """Forget the loaded settings (tests, or after RCE_WORK_DIR changes)."""
    global _settings
    _settings = None


__all__ = [
    "Settings",
    "WorkspaceSettings",
    "BrowserSettings",
    "RecorderSettings",
    "ControlSettings",
    "LifecycleSettings",
    "LoggingSettings",
    "ConfigLoader",
    "load_config",
    "project_dir",
    "get_settings",
    "reset_settings",
]
