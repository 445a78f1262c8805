"""
Timeline store - the single write path of a run.

Appending an event, indexing it and touching its tab happen as one step
under one lock, so the log order, the ``i`` order and the index file order
always agree even when several producers call in.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rce_engine.timeline.event_log import EventLog
from rce_engine.timeline.frame_index import FrameIndex, FrameIndexer
from rce_engine.timeline.models import EventRecord, FrameEntry
from rce_engine.timeline.resolver import TimeTravelResolver
from rce_engine.timeline.tabs import TabRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredEvent:
    """Outcome of one append: log position and frame (None for markers)."""
    seq: int
    frame: Optional[FrameEntry]


class TimelineStore:
    """
    Event log + frame indexer + tab registry of one run.

    Example:
        >>> store = TimelineStore.open(run_paths)
        >>> stored = store.record(0, {"type": 3, "timestamp": 1700000000000})
        >>> store.resolver().resolve(IndexLocator(stored.frame.i))
    """

    def __init__(
        self,
        events_path: Union[str, Path],
        rrweb_dir: Union[str, Path],
        tabs_path: Optional[Union[str, Path]] = None,
        durable: bool = True,
        started_at: Optional[int] = None,
    ):
        self._lock = threading.Lock()
        self._log = EventLog(events_path, durable=durable)
        self._indexer = FrameIndexer(rrweb_dir)
        if tabs_path is not None and Path(tabs_path).exists():
            self._tabs = TabRegistry.load(tabs_path, started_at=started_at)
        else:
            self._tabs = TabRegistry(tabs_path, started_at=started_at)
        self._closed = False

    @classmethod
    def open(cls, run_paths: Any, durable: bool = True, started_at: Optional[int] = None) -> "TimelineStore":
        """
        Open the store of a run directory and recover its index.

        Args:
            run_paths: RunPaths of the run
            durable: fsync every event append
            started_at: Run start (epoch ms)
        """
        store = cls(
            events_path=run_paths.events_file,
            rrweb_dir=run_paths.rrweb_dir,
            tabs_path=run_paths.tabs_file,
            durable=durable,
            started_at=started_at,
        )
        store.recover()
        return store

    @property
    def event_log(self) -> EventLog:
        return self._log

    @property
    def indexer(self) -> FrameIndexer:
        return self._indexer

    @property
    def index(self) -> FrameIndex:
        return self._indexer.index

    @property
    def tabs(self) -> TabRegistry:
        return self._tabs

    def recover(self) -> int:
        """Re-derive the index from the log; returns the number of frames added."""
        with self._lock:
            missing = self._indexer.recover(self._log)
            for record in self._log.read():
                if record.tab_id not in self._tabs:
                    self._tabs.register(record.tab_id)
            return missing

    def record(self, tab_id: int, payload: Dict[str, Any]) -> StoredEvent:
        """
        Append, index and attribute one event.

        If an earlier index write failed, the index files are repaired from
        the log once this event is in.

        Raises:
            IOFailureError: If the log or an index file could not be written
            RuntimeError: If the store is closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Timeline store is closed")
            seq = self._log.append(tab_id, payload)
            self._tabs.touch(tab_id, EventRecord(tab_id, payload).timestamp)
            repair = self._indexer.stale
            frame = self._indexer.on_event(tab_id, payload)
            if repair:
                self._indexer.recover(self._log)
        return StoredEvent(seq=seq, frame=frame)

    def resolver(self) -> TimeTravelResolver:
        return TimeTravelResolver(self.index, self._log)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._indexer.close()
            self._log.close()
        logger.info(f"Timeline closed: {self._log.count()} events, {len(self.index)} frames")
