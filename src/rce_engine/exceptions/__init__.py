"""
Exceptions module - Custom exception hierarchy.

This module defines all custom exceptions used throughout RCE Engine.
Each exception class carries a ``code`` tag; ``exception_for_code`` turns a
tag received over the control channel back into the matching class.
"""

from typing import Optional

from rce_engine.exceptions.base import (
    RCEError,
    ConfigurationError,
    IOFailureError,
)
from rce_engine.exceptions.browser import (
    BrowserError,
    BrowserLaunchError,
    ActionFailedError,
    ActionTimeoutError,
)
from rce_engine.exceptions.timeline import (
    TimelineError,
    FrameNotFoundError,
    InvalidLocatorError,
)
from rce_engine.exceptions.control import (
    ControlError,
    NotRunningError,
    ProtocolError,
    UnknownCommandError,
    ControlTimeoutError,
    ConnectionClosedError,
)
from rce_engine.exceptions.lifecycle import (
    LifecycleError,
    AlreadyInProgressError,
    NoActiveSessionError,
)


def exception_for_code(code: Optional[str], message: str) -> RCEError:
    """
    Build an exception instance from a wire error tag.

    Classes whose constructors need extra arguments are rebuilt through the
    base constructor so the tag and message survive the round trip.

    Args:
        code: Error tag from a control response (may be None)
        message: Error message from the response

    Returns:
        An RCEError subclass instance matching the tag
    """
    by_code = {
        "configuration_error": ConfigurationError,
        "io_failure": IOFailureError,
        "browser_launch_failed": BrowserLaunchError,
        "action_failed": ActionFailedError,
        "timeout": ActionTimeoutError,
        "not_found": FrameNotFoundError,
        "invalid_locator": InvalidLocatorError,
        "not_running": NotRunningError,
        "protocol_error": ProtocolError,
        "unknown_command": UnknownCommandError,
        "connection_closed": ConnectionClosedError,
        "already_in_progress": AlreadyInProgressError,
        "no_session": NoActiveSessionError,
    }
    cls = by_code.get(code or "", RCEError)
    error = Exception.__new__(cls)
    RCEError.__init__(error, message)
    return error


__all__ = [
    # Base exceptions
    "RCEError",
    "ConfigurationError",
    "IOFailureError",
    # Browser exceptions
    "BrowserError",
    "BrowserLaunchError",
    "ActionFailedError",
    "ActionTimeoutError",
    # Timeline exceptions
    "TimelineError",
    "FrameNotFoundError",
    "InvalidLocatorError",
    # Control channel exceptions
    "ControlError",
    "NotRunningError",
    "ProtocolError",
    "UnknownCommandError",
    "ControlTimeoutError",
    "ConnectionClosedError",
    # Lifecycle exceptions
    "LifecycleError",
    "AlreadyInProgressError",
    "NoActiveSessionError",
    "exception_for_code",
]
