"""
Browser Interface - Abstract base class for the recorded browser.

The recorder drives exactly one browser context. Pages in that context are
tabs: tab 0 is the primary page and later pages are numbered from 1 in
the order they open. Every action method takes an optional ``tab_id``;
when omitted, the action runs on the active tab.

Implementations translate engine errors into ``ActionTimeoutError`` (a
browser-side wait ran out) or ``ActionFailedError`` (anything else).

Example:
    >>> from rce_engine.browsers import PlaywrightBrowser
    >>> browser = PlaywrightBrowser(settings.browser)
    >>> await browser.launch(event_sink=pipeline.submit)
    >>> await browser.navigate("http://localhost:3000")
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


class BrowserType(Enum):
    """Supported browser types."""
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


# Receives (tab_id, rrweb event) for every captured event
EventSink = Callable[[int, Dict[str, Any]], Awaitable[Any]]


@dataclass
class TabInfo:
    """A live tab as seen by the browser."""
    tab_id: int
    url: str
    title: str = ""
    closed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"tabId": self.tab_id, "url": self.url, "title": self.title, "closed": self.closed}


class IBrowserCapability(ABC):
    """
    Abstract interface for the browser driven by the recorder.
    """

    # Lifecycle

    @abstractmethod
    async def launch(
        self,
        event_sink: Optional[EventSink] = None,
        storage_state: Optional[Union[str, Path]] = None,
    ) -> None:
        """
        Launch the browser, open the primary tab and start capturing.

        Args:
            event_sink: Coroutine called with every captured event
            storage_state: Cookies/localStorage file to restore, if present
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the browser and all of its tabs."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while the browser process is alive."""
        ...

    @property
    @abstractmethod
    def pid(self) -> Optional[int]:
        """OS process id of the browser, when known."""
        ...

    @property
    @abstractmethod
    def active_tab_id(self) -> int:
        """Tab that commands without a ``tab_id`` act on."""
        ...

    @abstractmethod
    def tabs(self) -> List[TabInfo]:
        """Tabs opened so far (closed ones included)."""
        ...

    @abstractmethod
    async def save_storage_state(self, path: Union[str, Path]) -> bool:
        """Persist cookies/localStorage; returns False if nothing was saved."""
        ...

    # Navigation

    @abstractmethod
    async def navigate(self, url: str, wait_until: str = "domcontentloaded", tab_id: Optional[int] = None) -> Dict[str, Any]:
        """Go to ``url``; returns ``{url, title, status}``."""
        ...

    @abstractmethod
    async def go_back(self, tab_id: Optional[int] = None) -> Dict[str, Any]:
        """Navigate back in history; returns ``{url, title}``."""
        ...

    # Interaction

    @abstractmethod
    async def click(
        self,
        selector: str,
        button: str = "left",
        click_count: int = 1,
        timeout_ms: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> None:
        ...

    @abstractmethod
    async def type(self, selector: str, text: str, delay_ms: Optional[int] = None, tab_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def press_key(self, key: str, tab_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def hover(self, selector: str, timeout_ms: Optional[int] = None, tab_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def select_option(
        self,
        selector: str,
        value: Optional[str] = None,
        label: Optional[str] = None,
        index: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> List[str]:
        """Select by value, label or index (first one given); returns selected values."""
        ...

    @abstractmethod
    async def upload_files(self, selector: str, paths: List[str], tab_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def evaluate(
        self,
        expression: str,
        args: Optional[List[Any]] = None,
        is_function: bool = True,
        tab_id: Optional[int] = None,
    ) -> Any:
        """Evaluate JavaScript in the page and return its JSON-able result."""
        ...

    @abstractmethod
    async def wait_for(
        self,
        selector: Optional[str] = None,
        state: str = "visible",
        timeout_ms: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> None:
        """Wait for a selector state, or just wait ``timeout_ms`` if no selector."""
        ...

    @abstractmethod
    async def resize(self, width: int, height: int, tab_id: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def drag(
        self,
        from_selector: Optional[str] = None,
        to_selector: Optional[str] = None,
        from_point: Optional[Dict[str, float]] = None,
        to_point: Optional[Dict[str, float]] = None,
        steps: int = 10,
        tab_id: Optional[int] = None,
    ) -> None:
        """Drag between two selectors, or between two ``{x, y}`` points."""
        ...

    @abstractmethod
    async def handle_dialog(self, accept: bool = True, prompt_text: Optional[str] = None, tab_id: Optional[int] = None) -> None:
        """Arm a one-shot handler for the next dialog."""
        ...

    # Capture

    @abstractmethod
    async def screenshot(self, path: Union[str, Path], full_page: bool = False, tab_id: Optional[int] = None) -> Path:
        ...

    @abstractmethod
    async def snapshot_html(self, tab_id: Optional[int] = None) -> str:
        """Current DOM serialized as HTML."""
        ...

    @abstractmethod
    async def close_tab(self, tab_id: Optional[int] = None) -> None:
        ...

    async def __aenter__(self) -> "IBrowserCapability":
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
