"""
Interfaces module - Abstract base classes for the external capabilities.

These interfaces define the contracts the recorder and the time-travel
service depend on, so the browser and replay engines can be swapped or
faked in tests.
"""

from rce_engine.interfaces.browser import (
    BrowserType,
    EventSink,
    IBrowserCapability,
    TabInfo,
)
from rce_engine.interfaces.replay import IReplayer, Viewport

__all__ = [
    "BrowserType",
    "EventSink",
    "IBrowserCapability",
    "TabInfo",
    "IReplayer",
    "Viewport",
]
