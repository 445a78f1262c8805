"""
Event Log - append-only, per-run store of tab-scoped capture events.

Each line of ``rrweb/events.rrweb.jsonl`` is ``{"tabId": N, "event": {...}}``
in global arrival order. Appends are durable (flush + fsync) before they
return unless the log was opened in buffered mode; reads are lazy and skip
malformed lines.

Example:
    >>> log = EventLog(run_paths.events_file)
    >>> seq = log.append(0, {"type": 2, "timestamp": 1700000000000, "data": {}})
    >>> for record in log.read(0, 10):
    ...     print(record.tab_id, record.timestamp)
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TextIO, Union

from rce_engine.exceptions import FrameNotFoundError, IOFailureError
from rce_engine.timeline.models import EventRecord, is_indexable
from rce_engine.utils.jsonl import dumps_line, ensure_line_boundary, iter_json_lines

logger = logging.getLogger(__name__)


class EventLog:
    """
    Append-only event log backed by a JSONL file.

    ``append`` returns the record's position in the log (0-based count of
    well-formed records before it). Positions survive reopening because a
    reopened log counts its existing records.
    """

    def __init__(self, path: Union[str, Path], durable: bool = True):
        """
        Open (or create) an event log.

        Args:
            path: Path to the events file
            durable: fsync each append; False only flushes to the OS
        """
        self._path = Path(path)
        self._durable = durable
        self._lock = threading.Lock()
        self._handle: Optional[TextIO] = None
        self._count = sum(1 for _ in self._iter_raw())

    @property
    def path(self) -> Path:
        return self._path

    @property
    def durable(self) -> bool:
        return self._durable

    def __len__(self) -> int:
        return self._count

    def count(self) -> int:
        """Number of well-formed records in the log."""
        return self._count

    def _open_for_append(self) -> TextIO:
        if self._handle is None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                ensure_line_boundary(self._path)
                self._handle = open(self._path, "a", encoding="utf-8")
            except OSError as e:
                raise IOFailureError(f"Failed to open event log: {e}", path=str(self._path))
        return self._handle

    def append(self, tab_id: int, payload: Dict[str, Any]) -> int:
        """
        Append one event.

        Args:
            tab_id: Tab that emitted the event
            payload: Opaque capture event

        Returns:
            Position of the record in the log

        Raises:
            IOFailureError: If the record could not be written
        """
        line = dumps_line({"tabId": tab_id, "event": payload}) + "\n"
        with self._lock:
            handle = self._open_for_append()
            try:
                handle.write(line)
                handle.flush()
                if self._durable:
                    os.fsync(handle.fileno())
            except (OSError, ValueError) as e:
                raise IOFailureError(f"Failed to append event: {e}", path=str(self._path))
            seq = self._count
            self._count += 1
        return seq

    def _iter_raw(self) -> Iterator[EventRecord]:
        for data in iter_json_lines(self._path):
            if not isinstance(data, dict) or "event" not in data:
                logger.warning(f"Skipping event log line without an event: {str(data)[:100]!r}")
                continue
            try:
                yield EventRecord.from_dict(data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable event record: {e}")

    def read(self, start: int = 0, stop: Optional[int] = None) -> Iterator[EventRecord]:
        """
        Lazily yield records with positions in ``[start, stop)``.

        The returned iterator reads the file only as far as it is consumed,
        and each call starts a fresh pass.
        """
        for seq, record in enumerate(self._iter_raw()):
            if stop is not None and seq >= stop:
                return
            if seq >= start:
                yield record

    def __iter__(self) -> Iterator[EventRecord]:
        return self.read()

    def first_timestamp(self, tab_id: Optional[int] = None) -> Optional[int]:
        """Timestamp of the first event (optionally of one tab), or None."""
        for record in self.read():
            if tab_id is not None and record.tab_id != tab_id:
                continue
            if record.timestamp is not None:
                return record.timestamp
        return None

    def tab_ids(self) -> List[int]:
        """Distinct tab ids in first-seen order."""
        seen: Dict[int, None] = {}
        for record in self.read():
            seen.setdefault(record.tab_id, None)
        return list(seen)

    def tab_prefix(self, tab_id: int, frame_index: int) -> List[Dict[str, Any]]:
        """
        Payloads of one tab up to and including the event of frame ``frame_index``.

        Frame positions count indexable events across all tabs, so the log is
        walked with the same counter the indexer uses and reading stops as
        soon as the target event has been included.

        Raises:
            FrameNotFoundError: If the frame is not in the log or belongs to
                another tab
        """
        payloads: List[Dict[str, Any]] = []
        position = 0
        for record in self.read():
            indexable = is_indexable(record.event)
            if record.tab_id == tab_id:
                payloads.append(record.event)
            if not indexable:
                continue
            if position == frame_index:
                if record.tab_id != tab_id:
                    raise FrameNotFoundError(
                        f"Frame {frame_index} belongs to tab {record.tab_id}, not tab {tab_id}",
                        locator=str(frame_index),
                        tab_id=tab_id,
                    )
                return payloads
            position += 1
        raise FrameNotFoundError(
            f"Frame {frame_index} is beyond the end of the log ({position} frames)",
            locator=str(frame_index),
            tab_id=tab_id,
        )

    def close(self) -> None:
        """Close the append handle (reads keep working)."""
        with self._lock:
            if self._handle is not None:
                try:
                    self._handle.close()
                finally:
                    self._handle = None
