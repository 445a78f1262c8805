"""
Settings - Pydantic models for type-safe configuration.

This module defines all configuration settings as Pydantic models,
providing validation, type hints, and automatic environment variable loading.

Example:
    >>> from rce_engine.config import Settings, load_config
    >>> settings = load_config()  # Loads from env, yaml, and defaults
    >>> print(settings.control.request_timeout_s)
    35.0
"""

import os
from pathlib import Path
from typing import Literal, Optional
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkspaceSettings(BaseModel):
    """
    Where run data lives.

    Attributes:
        work_dir: Project directory; the workspace is ``<work_dir>/<dir_name>``
        dir_name: Name of the workspace directory
    """
    work_dir: str = Field(default_factory=lambda: os.environ.get("RCE_WORK_DIR") or os.getcwd())
    dir_name: str = ".rce"

    @property
    def root(self) -> Path:
        return Path(self.work_dir) / self.dir_name


class BrowserSettings(BaseModel):
    """
    Browser automation settings.

    Attributes:
        headless: Run browser in headless mode
        browser_type: Playwright browser type
        timeout_ms: Default timeout for browser operations
        viewport_width: Browser viewport width in pixels
        viewport_height: Browser viewport height in pixels
        persist_storage_state: Reuse cookies/localStorage between runs
        storage_state_interval_s: Period of the background storage-state save
    """
    headless: bool = False
    browser_type: Literal["chromium", "firefox", "webkit"] = "chromium"
    timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    viewport_width: int = Field(default=1280, ge=320, le=3840)
    viewport_height: int = Field(default=800, ge=240, le=2160)
    persist_storage_state: bool = True
    storage_state_interval_s: float = Field(default=30.0, ge=1.0, le=3600.0)

    # rrweb capture options (the bundle is loaded from rrweb_script_path if set, else rrweb_script_url)
    rrweb_script_url: str = "https://cdn.jsdelivr.net/npm/rrweb@1.1.3/dist/rrweb.min.js"
    rrweb_script_path: Optional[str] = None
    record_canvas: bool = True
    collect_fonts: bool = True
    sampling_mousemove: int = Field(default=50, ge=0, le=10000)
    sampling_input: Literal["all", "last"] = "last"
    checkout_every_ms: int = Field(default=10000, ge=0)

    @property
    def viewport(self) -> dict:
        return {"width": self.viewport_width, "height": self.viewport_height}


class RecorderSettings(BaseModel):
    """
    Recorder process settings.

    Attributes:
        url: Start URL for the primary tab
        server_cmd: App dev server to spawn alongside the browser ("none" disables)
        boot_wait_ms: Delay after spawning the dev server
        queue_size: Capacity of the event pipeline queue
        backpressure: What a full queue does to producers
        durable_writes: fsync every event append
        latest_screenshots: Keep screenshots/latest.png fresh (after commands and
            periodically)
        latest_screenshot_interval_s: Period of the background refresh (0 disables it)
    """
    url: str = "http://localhost:3000"
    server_cmd: str = "none"
    boot_wait_ms: int = Field(default=1500, ge=0, le=120000)
    queue_size: int = Field(default=10000, ge=1)
    backpressure: Literal["block", "drop_newest"] = "block"
    durable_writes: bool = True
    latest_screenshots: bool = True
    latest_screenshot_interval_s: float = Field(default=5.0, ge=0, le=3600)


class ControlSettings(BaseModel):
    """
    Control channel settings.

    Attributes:
        socket_name: Socket file name inside the workspace (fixed, not per run)
        request_timeout_s: Client wait for an action response
        ping_timeout_s: Client wait for a ping response
        connect_retries: Extra connect attempts when the endpoint is not up yet
    """
    socket_name: str = "control.sock"
    request_timeout_s: float = Field(default=35.0, gt=0, le=3600)
    ping_timeout_s: float = Field(default=5.0, gt=0, le=600)
    connect_retries: int = Field(default=0, ge=0, le=50)


class LifecycleSettings(BaseModel):
    """
    Start/stop/restart timings.

    Attributes:
        kill_grace_ms: Wait between SIGTERM and SIGKILL
        release_poll_attempts: Attempts while waiting for the endpoint to free up
        release_poll_interval_ms: Delay between release polls
        restart_settle_ms: Pause between stop and start on restart
        port: Optional TCP port that must be free before starting
        teardown_attempts: Attempts per teardown step
    """
    kill_grace_ms: int = Field(default=100, ge=0, le=60000)
    release_poll_attempts: int = Field(default=10, ge=1, le=1000)
    release_poll_interval_ms: int = Field(default=500, ge=10, le=60000)
    restart_settle_ms: int = Field(default=1000, ge=0, le=60000)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    teardown_attempts: int = Field(default=2, ge=1, le=10)


class LoggingSettings(BaseModel):
    """
    Logging configuration.

    Attributes:
        level: Log level
        file: Log file path (None for console only)
        json_format: Use JSON format for logs
    """
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    file: Optional[str] = None
    json_format: bool = False


class Settings(BaseSettings):
    """
    Root settings container - single source of truth for all configuration.

    Settings are loaded in this priority order (highest to lowest):
    1. Explicit values passed to constructor
    2. Environment variables (prefixed with RCE__)
    3. Config file (YAML)
    4. Default values

    Example:
        >>> settings = Settings()  # Load from env vars
        >>> settings = Settings(browser=BrowserSettings(headless=True))  # Override
    """

    model_config = SettingsConfigDict(
        env_prefix="RCE__",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    workspace: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    recorder: RecorderSettings = Field(default_factory=RecorderSettings)
    control: ControlSettings = Field(default_factory=ControlSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    debug: bool = False

    def merge_with(self, overrides: dict) -> "Settings":
        """
        Create a new Settings instance with overrides applied.

        Args:
            overrides: Dictionary of values to override

        Returns:
            New Settings instance with overrides applied
        """
        current = self.model_dump()

        def deep_merge(base: dict, updates: dict) -> dict:
            for key, value in updates.items():
                if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                    deep_merge(base[key], value)
                else:
                    base[key] = value
            return base

        merged = deep_merge(current, overrides)
        return Settings(**merged)
