"""
Time-travel service - read-only queries over a recorded run.

Loads a run's frame index and event log, resolves locators, slices the
event prefix of the resolved frame and hands it to a replayer to produce a
screenshot or an HTML snapshot. The run may still be recording: nothing is
written to the log or the index files.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rce_engine.replay.replayer import PlaywrightReplayer
from rce_engine.interfaces.replay import IReplayer, Viewport
from rce_engine.session.run import RunMeta, RunPaths
from rce_engine.timeline.event_log import EventLog
from rce_engine.timeline.frame_index import FrameIndex, rebuild_index
from rce_engine.timeline.models import FrameEntry, Tab, now_ms
from rce_engine.timeline.resolver import Locator, Resolution, TimeTravelResolver, parse_locator, slice_events
from rce_engine.timeline.tabs import TabRegistry

logger = logging.getLogger(__name__)

# A resolution, a Locator or locator text
Target = Union[Resolution, Locator, str]


class TimeTravelService:
    """
    Frames, tabs, resolution and rendering for one run.

    Example:
        >>> service = TimeTravelService(workspace.current_run())
        >>> resolution = service.resolve("+1500", tab=0)
        >>> await service.shot(resolution)
    """

    def __init__(
        self,
        run_paths: RunPaths,
        replayer: Optional[IReplayer] = None,
        viewport: Optional[Viewport] = None,
        rebuild: bool = False,
    ):
        """
        Args:
            run_paths: Run to query
            replayer: Renders event prefixes (a PlaywrightReplayer if None)
            viewport: Replay viewport (the run's recorded viewport if None)
            rebuild: Derive the index from the event log instead of frames.jsonl
        """
        self._paths = run_paths
        self._replayer = replayer
        self._log = EventLog(run_paths.events_file, durable=False)

        if rebuild or not run_paths.frames_file.exists():
            logger.info("Deriving frame index from the event log")
            self._index = FrameIndex(rebuild_index(self._log))
        else:
            self._index = FrameIndex.load(run_paths.frames_file)

        meta = RunMeta.load(run_paths.meta_file)
        self._meta = meta
        self._viewport = viewport or (meta.viewport if meta else None)
        self._resolver = TimeTravelResolver(self._index, self._log)

    @property
    def run_paths(self) -> RunPaths:
        return self._paths

    @property
    def meta(self) -> Optional[RunMeta]:
        return self._meta

    @property
    def index(self) -> FrameIndex:
        return self._index

    @property
    def event_log(self) -> EventLog:
        return self._log

    @property
    def replayer(self) -> IReplayer:
        if self._replayer is None:
            self._replayer = PlaywrightReplayer()
        return self._replayer

    def frames(self, tab: Optional[int] = None) -> List[FrameEntry]:
        """Frames in arrival order, optionally for one tab."""
        if tab is None:
            return self._index.entries
        return self._index.for_tab(tab)

    def tabs(self) -> List[Tab]:
        """Tabs from ``meta/tabs.jsonl`` plus any tab seen only in the index."""
        registry = TabRegistry.load(self._paths.tabs_file) if self._paths.tabs_file.exists() else TabRegistry()
        known = {tab.tab_id: tab for tab in registry.tabs()}
        for tab_id in self._index.tab_ids():
            if tab_id not in known:
                first = self._index.first(tab_id)
                seen_at = first.ts if first else 0
                known[tab_id] = Tab(tab_id=tab_id, first_seen_at=seen_at, last_seen_at=seen_at)
        return [known[tab_id] for tab_id in sorted(known)]

    def resolve(self, locator: Union[str, Locator], tab: Optional[int] = None) -> Resolution:
        """
        Raises:
            InvalidLocatorError: For unparseable locator text
            FrameNotFoundError: If nothing matches
        """
        if isinstance(locator, str):
            locator = parse_locator(locator)
        return self._resolver.resolve(locator, tab_id=tab)

    def events_for(self, resolution: Resolution) -> List[Dict[str, Any]]:
        return slice_events(self._log, resolution)

    def _as_resolution(self, target: Target, tab: Optional[int]) -> Resolution:
        if isinstance(target, Resolution):
            return target
        return self.resolve(target, tab)

    async def shot(
        self,
        target: Target,
        tab: Optional[int] = None,
        out: Optional[Union[str, Path]] = None,
    ) -> Path:
        """Render a frame to a PNG (``screenshots/shot_<ms>.png`` by default)."""
        resolution = self._as_resolution(target, tab)
        events = self.events_for(resolution)
        path = Path(out) if out else self._paths.screenshots_dir / f"shot_{now_ms()}.png"
        logger.info(f"Using {len(events)} events from tab {resolution.tab_id}")
        return await self.replayer.render_screenshot(events, path, self._viewport)

    async def html(
        self,
        target: Target,
        tab: Optional[int] = None,
        out: Optional[Union[str, Path]] = None,
    ) -> Dict[str, Any]:
        """
        Render a frame to HTML and save it under ``snapshots/``.

        Returns:
            ``{"path", "html", "bytes"}``
        """
        resolution = self._as_resolution(target, tab)
        events = self.events_for(resolution)
        markup = await self.replayer.render_html(events, self._viewport)
        path = Path(out) if out else self._paths.snapshots_dir / f"frame_{resolution.frame.i}_{now_ms()}.html"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(markup, encoding="utf-8")
        return {"path": str(path), "html": markup, "bytes": len(markup)}

    async def close(self) -> None:
        if self._replayer is not None:
            await self._replayer.close()
        self._log.close()
