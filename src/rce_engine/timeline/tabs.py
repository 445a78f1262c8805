"""
Tab registry - tab identity tracking for a run.

Tabs are registered when the browser opens a page, or lazily the first time
an event arrives from an unseen tab id. Each registration (and each URL
change reported by the browser) is appended to ``meta/tabs.jsonl`` as
``{"t", "dt", "tabId", "url"}``. Tabs are never removed.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from rce_engine.timeline.models import Tab, now_ms
from rce_engine.utils.jsonl import append_json_line, iter_json_lines

logger = logging.getLogger(__name__)


class TabRegistry:
    """Known tabs of one run, persisted as a JSONL journal."""

    def __init__(self, path: Optional[Union[str, Path]] = None, started_at: Optional[int] = None):
        """
        Args:
            path: Journal file (None keeps the registry in memory only)
            started_at: Run start (epoch ms) used for the ``dt`` field
        """
        self._path = Path(path) if path is not None else None
        self._started_at = started_at if started_at is not None else now_ms()
        self._tabs: Dict[int, Tab] = {}
        self._lock = threading.Lock()

    @classmethod
    def load(cls, path: Union[str, Path], started_at: Optional[int] = None) -> "TabRegistry":
        """Rebuild a registry from an existing journal (last URL wins)."""
        registry = cls(path, started_at=started_at)
        for data in iter_json_lines(path):
            if not isinstance(data, dict) or "tabId" not in data:
                continue
            tab_id = int(data["tabId"])
            seen_at = int(data.get("t") or 0)
            tab = registry._tabs.get(tab_id)
            if tab is None:
                registry._tabs[tab_id] = Tab(
                    tab_id=tab_id,
                    url=data.get("url") or "",
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                )
            else:
                tab.url = data.get("url") or tab.url
                tab.last_seen_at = max(tab.last_seen_at, seen_at)
        return registry

    def _persist(self, tab: Tab) -> None:
        if self._path is None:
            return
        t = now_ms()
        append_json_line(self._path, {"t": t, "dt": t - self._started_at, "tabId": tab.tab_id, "url": tab.url})

    def register(self, tab_id: int, url: str = "") -> Tab:
        """Register a tab (or record a new URL for a known one)."""
        with self._lock:
            tab = self._tabs.get(tab_id)
            if tab is None:
                tab = Tab(tab_id=tab_id, url=url)
                self._tabs[tab_id] = tab
                logger.info(f"Tab {tab_id} registered: {url or '(no url)'}")
                self._persist(tab)
            elif url and url != tab.url:
                tab.url = url
                tab.last_seen_at = now_ms()
                self._persist(tab)
            return tab

    def touch(self, tab_id: int, seen_at: Optional[int] = None) -> Tab:
        """Mark a tab as active, registering it on first sight."""
        tab = self._tabs.get(tab_id)
        if tab is None:
            tab = self.register(tab_id)
        tab.last_seen_at = seen_at if seen_at is not None else now_ms()
        return tab

    def get(self, tab_id: int) -> Optional[Tab]:
        return self._tabs.get(tab_id)

    def tabs(self) -> List[Tab]:
        return [self._tabs[tab_id] for tab_id in sorted(self._tabs)]

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._tabs

    def __len__(self) -> int:
        return len(self._tabs)

    def __iter__(self) -> Iterator[Tab]:
        return iter(self.tabs())
