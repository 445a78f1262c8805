"""
Browser-related exceptions.
"""

from rce_engine.exceptions.base import RCEError


class BrowserError(RCEError):
    """Base exception for browser-related errors."""

    code = "browser_error"


class BrowserLaunchError(BrowserError):
    """
    The recorded browser could not be started.

    Usually missing Playwright browser binaries (``playwright install
    chromium``) or a storage-state file the browser refuses to load.
    """

    code = "browser_launch_failed"


class ActionFailedError(BrowserError):
    """
    The browser capability rejected or raised during an action.

    Raised when an action fails for any reason other than a timeout
    (missing element, navigation error, page closed, ...).
    """

    code = "action_failed"

    def __init__(self, message: str, action_type: str, selector: str | None = None):
        super().__init__(message, {"action_type": action_type, "selector": selector})
        self.action_type = action_type
        self.selector = selector


class ActionTimeoutError(BrowserError):
    """
    Action timed out inside the browser.

    Raised when a browser-side wait (selector, navigation, ...) exceeds
    its own timeout.
    """

    code = "timeout"

    def __init__(self, message: str, action_type: str, timeout_ms: int | None = None):
        super().__init__(message, {"action_type": action_type, "timeout_ms": timeout_ms})
        self.action_type = action_type
        self.timeout_ms = timeout_ms
