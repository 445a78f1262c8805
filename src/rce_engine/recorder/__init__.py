"""
Recorder module - the recording process.
"""

from rce_engine.recorder.recorder import BrowserFactory, Recorder, default_browser_factory

__all__ = [
    "BrowserFactory",
    "Recorder",
    "default_browser_factory",
]
