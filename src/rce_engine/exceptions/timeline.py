"""
Time-travel exceptions.
"""

from rce_engine.exceptions.base import RCEError


class TimelineError(RCEError):
    """Base exception for event log / frame index lookups."""

    code = "timeline_error"


class FrameNotFoundError(TimelineError):
    """
    A locator resolved to nothing.

    Raised for an empty log, a target before the first frame, an index
    beyond the end of the index, or an exact ``ts#k`` pair that is absent.
    """

    code = "not_found"

    def __init__(self, message: str, locator: str | None = None, tab_id: int | None = None):
        super().__init__(message, {"locator": locator, "tab_id": tab_id})
        self.locator = locator
        self.tab_id = tab_id


class InvalidLocatorError(TimelineError):
    """The locator text could not be parsed."""

    code = "invalid_locator"

    def __init__(self, message: str, text: str):
        super().__init__(message, {"text": text})
        self.text = text
