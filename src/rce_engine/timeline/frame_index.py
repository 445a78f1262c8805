"""
Frame Index - derived, binary-searchable view over the event log.

The indexer assigns every indexable event a ``(ts, k, i)`` triple at append
time and writes it to three files in the run's ``rrweb/`` directory:

- ``frames.jsonl``          every entry, in arrival order
- ``frames.tab-<id>.jsonl`` entries of one tab
- ``frames.txt``            ``ts#k`` per line (human/grep friendly)

The index is fully derivable from the log: ``rebuild_index`` replays the log
through a fresh counter and produces the same entries, serialized the same
way, so a rebuilt file is byte-identical to the live one.
"""

import bisect
import logging
import math
import os
import re
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, TextIO, Tuple, Union

from rce_engine.exceptions import IOFailureError
from rce_engine.timeline.models import FrameEntry, is_custom_event, is_indexable
from rce_engine.utils.jsonl import dumps_line, ensure_line_boundary, iter_json_lines

logger = logging.getLogger(__name__)

FRAMES_FILE = "frames.jsonl"
FRAMES_TEXT_FILE = "frames.txt"
TAB_FRAMES_PATTERN = re.compile(r"^frames\.tab-(\d+)\.jsonl$")


def tab_frames_file(tab_id: int) -> str:
    return f"frames.tab-{tab_id}.jsonl"


class FrameCounter:
    """
    The indexer's entire state: a ``ts -> count`` map and the next ``i``.

    The map is shared by all tabs, so ``(ts, k)`` is unique across the run.
    """

    def __init__(self) -> None:
        self.ts_counts: Dict[int, int] = {}
        self.next_i = 0

    def assign(self, tab_id: int, payload: Dict) -> Optional[FrameEntry]:
        """Return the entry for an event, or None if it is not indexable."""
        if not is_indexable(payload):
            return None
        ts = int(payload["timestamp"])
        k = self.ts_counts.get(ts, 0)
        self.ts_counts[ts] = k + 1
        entry = FrameEntry(ts=ts, k=k, i=self.next_i, tab_id=tab_id)
        self.next_i += 1
        return entry

    def observe(self, entry: FrameEntry) -> None:
        """Advance the counters past an entry that is already on disk."""
        self.ts_counts[entry.ts] = max(self.ts_counts.get(entry.ts, 0), entry.k + 1)
        self.next_i = max(self.next_i, entry.i + 1)


def rebuild_index(events: Iterable) -> List[FrameEntry]:
    """
    Re-derive all frame entries from an event log (or any iterable of records).

    Args:
        events: EventLog or iterable of EventRecord

    Returns:
        Entries in arrival order
    """
    counter = FrameCounter()
    entries = []
    for record in events:
        entry = counter.assign(record.tab_id, record.event)
        if entry is not None:
            entries.append(entry)
    return entries


class FrameIndex:
    """
    In-memory frame index.

    Keeps the arrival-ordered list plus ``(ts, k)``-sorted views, merged and
    per tab, kept as parallel key/entry lists for ``bisect``.
    """

    def __init__(self, entries: Optional[Iterable[FrameEntry]] = None):
        self._entries: List[FrameEntry] = []
        self._positions: List[int] = []
        self._keys: List[Tuple[int, int]] = []
        self._sorted: List[FrameEntry] = []
        self._tab_keys: Dict[int, List[Tuple[int, int]]] = {}
        self._tab_sorted: Dict[int, List[FrameEntry]] = {}
        for entry in entries or ():
            self.add(entry)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "FrameIndex":
        """Load an index from a ``frames.jsonl`` file (missing file = empty)."""
        index = cls()
        for data in iter_json_lines(path):
            try:
                index.add(FrameEntry.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable frame entry {data!r}: {e}")
        return index

    def add(self, entry: FrameEntry) -> None:
        self._entries.append(entry)
        self._positions.append(entry.i)
        key = (entry.ts, entry.k)

        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self._sorted.insert(pos, entry)

        tab_keys = self._tab_keys.setdefault(entry.tab_id, [])
        tab_sorted = self._tab_sorted.setdefault(entry.tab_id, [])
        pos = bisect.bisect_right(tab_keys, key)
        tab_keys.insert(pos, key)
        tab_sorted.insert(pos, entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[FrameEntry]:
        return iter(self._entries)

    @property
    def entries(self) -> List[FrameEntry]:
        """Entries in arrival order."""
        return list(self._entries)

    def tab_ids(self) -> List[int]:
        return sorted(self._tab_sorted)

    def for_tab(self, tab_id: Optional[int] = None) -> List[FrameEntry]:
        """Entries sorted by ``(ts, k)``, optionally restricted to one tab."""
        if tab_id is None:
            return list(self._sorted)
        return list(self._tab_sorted.get(tab_id, []))

    def _view(self, tab_id: Optional[int]) -> Tuple[List[Tuple[int, int]], List[FrameEntry]]:
        if tab_id is None:
            return self._keys, self._sorted
        return self._tab_keys.get(tab_id, []), self._tab_sorted.get(tab_id, [])

    def by_index(self, i: int) -> Optional[FrameEntry]:
        """Entry whose position is ``i``."""
        pos = bisect.bisect_left(self._positions, i)
        if pos < len(self._positions) and self._positions[pos] == i:
            return self._entries[pos]
        return None

    def find_pair(self, ts: int, k: int, tab_id: Optional[int] = None) -> Optional[FrameEntry]:
        """Exact ``(ts, k)`` lookup."""
        keys, entries = self._view(tab_id)
        pos = bisect.bisect_left(keys, (ts, k))
        if pos < len(keys) and keys[pos] == (ts, k):
            return entries[pos]
        return None

    def floor(self, ts: int, tab_id: Optional[int] = None) -> Optional[FrameEntry]:
        """
        Rightmost entry with ``entry.ts <= ts`` (highest ``k`` on ties).

        Returns None when ``ts`` precedes the first entry of the view.
        """
        keys, entries = self._view(tab_id)
        pos = bisect.bisect_right(keys, (ts, math.inf)) - 1
        if pos < 0:
            return None
        return entries[pos]

    def first(self, tab_id: Optional[int] = None) -> Optional[FrameEntry]:
        _, entries = self._view(tab_id)
        return entries[0] if entries else None

    def last(self, tab_id: Optional[int] = None) -> Optional[FrameEntry]:
        _, entries = self._view(tab_id)
        return entries[-1] if entries else None


class FrameIndexer:
    """
    Writes frame entries as events are appended.

    Must be driven from the same critical section as the event log append
    (see ``TimelineStore``) so that file order matches ``i`` order.
    """

    def __init__(self, rrweb_dir: Union[str, Path], durable: bool = False):
        """
        Args:
            rrweb_dir: Directory holding the index files
            durable: fsync index writes (the log itself is always the source
                of truth, so this defaults to off)
        """
        self._dir = Path(rrweb_dir)
        self._durable = durable
        self._counter = FrameCounter()
        self._index = FrameIndex()
        self._handles: Dict[str, TextIO] = {}
        self._stale = False

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def frames_path(self) -> Path:
        return self._dir / FRAMES_FILE

    @property
    def text_path(self) -> Path:
        return self._dir / FRAMES_TEXT_FILE

    def tab_path(self, tab_id: int) -> Path:
        return self._dir / tab_frames_file(tab_id)

    @property
    def index(self) -> FrameIndex:
        """Live in-memory index of every indexed event in the log."""
        return self._index

    @property
    def stale(self) -> bool:
        """True after a failed write, until ``recover`` has repaired the files."""
        return self._stale

    @property
    def next_i(self) -> int:
        return self._counter.next_i

    def on_event(self, tab_id: int, payload: Dict) -> Optional[FrameEntry]:
        """
        Index one appended event.

        The live index always matches the log: the entry is kept even when a
        file write fails, and the files are left stale for ``recover``.

        Returns:
            The new entry, or None for custom/untimestamped events

        Raises:
            IOFailureError: If an index file could not be written
        """
        entry = self._counter.assign(tab_id, payload)
        if entry is None:
            if not is_custom_event(payload):
                logger.debug(f"Event without timestamp not indexed (tab {tab_id})")
            return None

        self._index.add(entry)
        if self._stale:
            return entry

        line = dumps_line(entry.to_dict()) + "\n"
        try:
            self._write(FRAMES_FILE, line)
            self._write(tab_frames_file(tab_id), line)
            self._write(FRAMES_TEXT_FILE, entry.key + "\n")
        except IOFailureError:
            self._stale = True
            logger.error(f"Frame index files out of date from {entry.key} (i={entry.i}); recovery needed")
            raise
        return entry

    def _write(self, name: str, text: str) -> None:
        path = self._dir / name
        try:
            handle = self._handles.get(name)
            if handle is None:
                self._dir.mkdir(parents=True, exist_ok=True)
                ensure_line_boundary(path)
                handle = open(path, "a", encoding="utf-8")
                self._handles[name] = handle
            handle.write(text)
            handle.flush()
            if self._durable:
                os.fsync(handle.fileno())
        except OSError as e:
            raise IOFailureError(f"Failed to write frame index: {e}", path=str(path))

    def recover(self, events: Iterable) -> int:
        """
        Bring the index files in line with the log and resume counters.

        Entries are re-derived from the log. A file whose content is a prefix
        of the derived content gets the missing tail appended; any other
        mismatch rewrites the file. Tab files for tabs with no frames are
        removed.

        Args:
            events: EventLog (or iterable of EventRecord) of this run

        Returns:
            Number of entries that were missing from ``frames.jsonl``
        """
        self.close()
        entries = rebuild_index(events)

        expected: Dict[str, List[str]] = {
            FRAMES_FILE: [],
            FRAMES_TEXT_FILE: [],
        }
        for entry in entries:
            line = dumps_line(entry.to_dict())
            expected[FRAMES_FILE].append(line)
            expected.setdefault(tab_frames_file(entry.tab_id), []).append(line)
            expected[FRAMES_TEXT_FILE].append(entry.key)

        missing = 0
        for name, lines in expected.items():
            added = self._reconcile(self._dir / name, lines)
            if name == FRAMES_FILE:
                missing = added

        if self._dir.exists():
            for path in self._dir.iterdir():
                if TAB_FRAMES_PATTERN.match(path.name) and path.name not in expected:
                    logger.warning(f"Removing frame index for tab with no frames: {path.name}")
                    path.unlink()

        self._counter = FrameCounter()
        self._index = FrameIndex()
        for entry in entries:
            self._counter.observe(entry)
            self._index.add(entry)
        self._stale = False

        if missing:
            logger.info(f"Recovered {missing} unindexed frame(s) in {self._dir}")
        return missing

    def _reconcile(self, path: Path, lines: List[str]) -> int:
        try:
            current = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
        except OSError as e:
            raise IOFailureError(f"Failed to read frame index: {e}", path=str(path))

        if current == lines[: len(current)] and path_ends_cleanly(path):
            tail = lines[len(current):]
            if tail:
                try:
                    with open(path, "a", encoding="utf-8") as f:
                        f.write("".join(line + "\n" for line in tail))
                except OSError as e:
                    raise IOFailureError(f"Failed to append frame index: {e}", path=str(path))
            return len(tail)

        logger.warning(f"Frame index {path.name} disagrees with the event log, rewriting")
        tmp = path.with_name(path.name + ".tmp")
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise IOFailureError(f"Failed to rewrite frame index: {e}", path=str(path))
        return len(lines) - min(len(current), len(lines))

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()


def path_ends_cleanly(path: Path) -> bool:
    """True if the file is missing, empty, or ends with a newline."""
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return True
    if size == 0:
        return True
    with open(path, "rb") as f:
        f.seek(-1, os.SEEK_END)
        return f.read(1) == b"\n"
