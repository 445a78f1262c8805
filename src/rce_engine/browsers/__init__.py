"""
Browsers module - Browser implementations.

Only Playwright is supported; it drives the recorded browser and, through
the replay module, the headless replay page.
"""

from rce_engine.browsers.playwright_browser import PlaywrightBrowser, find_browser_pid, rrweb_script_tag

__all__ = [
    "PlaywrightBrowser",
    "find_browser_pid",
    "rrweb_script_tag",
]
