"""
Time-Travel Resolver - turn a locator into a concrete frame.

Supported locator forms (``parse_locator``):

    1700000000123#2           exact (ts, k) pair
    +1500                     offset in ms from the first event
    1700000000123             raw epoch-ms timestamp
    2024-05-01T10:20:30.500Z  ISO-8601 wall clock (naive = local time)

Positional lookups (frame ``i``) are built directly as ``IndexLocator``.
Timestamp-like locators round *down*: the result is the latest frame at or
before the target, never a later one.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from rce_engine.exceptions import FrameNotFoundError, InvalidLocatorError
from rce_engine.timeline.event_log import EventLog
from rce_engine.timeline.frame_index import FrameIndex
from rce_engine.timeline.models import FrameEntry

logger = logging.getLogger(__name__)

_PAIR_RE = re.compile(r"^(\d+)#(\d+)$")
_OFFSET_RE = re.compile(r"^\+(\d+)$")
_DIGITS_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class IndexLocator:
    """Frame at position ``i``."""
    i: int

    def __str__(self) -> str:
        return f"index {self.i}"


@dataclass(frozen=True)
class FramePairLocator:
    """Frame with exactly this ``(ts, k)``."""
    ts: int
    k: int

    def __str__(self) -> str:
        return f"{self.ts}#{self.k}"


@dataclass(frozen=True)
class TimestampLocator:
    """Latest frame at or before ``ts`` (epoch ms)."""
    ts: int

    def __str__(self) -> str:
        return str(self.ts)


@dataclass(frozen=True)
class OffsetLocator:
    """Latest frame at or before first event + ``offset_ms``."""
    offset_ms: int

    def __str__(self) -> str:
        return f"+{self.offset_ms}"


@dataclass(frozen=True)
class WallClockLocator:
    """Latest frame at or before an ISO-8601 instant."""
    text: str

    def to_epoch_ms(self) -> int:
        return parse_iso_ms(self.text)

    def __str__(self) -> str:
        return self.text


Locator = Union[IndexLocator, FramePairLocator, TimestampLocator, OffsetLocator, WallClockLocator]


def parse_iso_ms(text: str) -> int:
    """
    Convert an ISO-8601 string to epoch milliseconds.

    A trailing ``Z`` means UTC; strings without an offset are local time.

    Raises:
        InvalidLocatorError: If the text is not a valid ISO-8601 instant
    """
    value = text.strip()
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise InvalidLocatorError(f"Invalid locator: {text!r}", text=text)
    # Naive datetimes are interpreted in local time by timestamp()
    return int(round(parsed.timestamp() * 1000))


def parse_locator(text: str) -> Locator:
    """
    Parse locator text.

    Args:
        text: ``ts#k``, ``+ms``, raw epoch ms, or an ISO-8601 instant

    Returns:
        The matching locator

    Raises:
        InvalidLocatorError: If the text matches no form
    """
    if text is None or not str(text).strip():
        raise InvalidLocatorError("Empty locator", text=str(text or ""))
    value = str(text).strip()

    match = _PAIR_RE.match(value)
    if match:
        return FramePairLocator(ts=int(match.group(1)), k=int(match.group(2)))

    match = _OFFSET_RE.match(value)
    if match:
        return OffsetLocator(offset_ms=int(match.group(1)))

    if _DIGITS_RE.match(value):
        return TimestampLocator(ts=int(value))

    # Validate now so bad input fails at parse time, not at resolve time
    parse_iso_ms(value)
    return WallClockLocator(text=value)


@dataclass(frozen=True)
class Resolution:
    """
    A resolved locator.

    Attributes:
        frame: The matched frame entry
        tab_id: The explicit tab filter, or the tab of the matched frame
    """
    frame: FrameEntry
    tab_id: int

    @property
    def index(self) -> int:
        return self.frame.i

    def to_dict(self) -> Dict[str, Any]:
        return {**self.frame.to_dict(), "tabId": self.tab_id, "key": self.frame.key}


class TimeTravelResolver:
    """
    Resolves locators against a frame index.

    The event log is only consulted for offset locators (to find the first
    event's timestamp) and for slicing.
    """

    def __init__(self, index: FrameIndex, event_log: Optional[EventLog] = None):
        self._index = index
        self._log = event_log

    @property
    def index(self) -> FrameIndex:
        return self._index

    def resolve(self, locator: Locator, tab_id: Optional[int] = None) -> Resolution:
        """
        Resolve a locator to a frame.

        Args:
            locator: Any Locator
            tab_id: Restrict the lookup to one tab

        Returns:
            Resolution with the matched frame

        Raises:
            FrameNotFoundError: If nothing matches
        """
        if isinstance(locator, IndexLocator):
            entry = self._index.by_index(locator.i)
            if entry is None:
                raise FrameNotFoundError(
                    f"Frame index {locator.i} out of range (0..{len(self._index) - 1})",
                    locator=str(locator),
                    tab_id=tab_id,
                )
            if tab_id is not None and entry.tab_id != tab_id:
                raise FrameNotFoundError(
                    f"Frame index {locator.i} belongs to tab {entry.tab_id}, not tab {tab_id}",
                    locator=str(locator),
                    tab_id=tab_id,
                )
        elif isinstance(locator, FramePairLocator):
            entry = self._index.find_pair(locator.ts, locator.k, tab_id)
            if entry is None:
                raise FrameNotFoundError(
                    f"No frame {locator}" + (f" in tab {tab_id}" if tab_id is not None else ""),
                    locator=str(locator),
                    tab_id=tab_id,
                )
        elif isinstance(locator, TimestampLocator):
            entry = self._floor(locator.ts, tab_id, str(locator))
        elif isinstance(locator, OffsetLocator):
            base = self._first_timestamp(tab_id)
            if base is None:
                raise FrameNotFoundError("No events recorded", locator=str(locator), tab_id=tab_id)
            entry = self._floor(base + locator.offset_ms, tab_id, str(locator))
        elif isinstance(locator, WallClockLocator):
            entry = self._floor(locator.to_epoch_ms(), tab_id, str(locator))
        else:
            raise TypeError(f"Unsupported locator: {locator!r}")

        resolved_tab = tab_id if tab_id is not None else entry.tab_id
        logger.debug(f"Resolved {locator} -> {entry.key} (i={entry.i}, tab={resolved_tab})")
        return Resolution(frame=entry, tab_id=resolved_tab)

    def _floor(self, ts: int, tab_id: Optional[int], text: str) -> FrameEntry:
        first = self._index.first(tab_id)
        if first is None:
            raise FrameNotFoundError(
                "No frames recorded" + (f" for tab {tab_id}" if tab_id is not None else ""),
                locator=text,
                tab_id=tab_id,
            )
        entry = self._index.floor(ts, tab_id)
        if entry is None:
            raise FrameNotFoundError(
                f"Target {ts} is before the first frame ({first.ts})",
                locator=text,
                tab_id=tab_id,
            )
        return entry

    def _first_timestamp(self, tab_id: Optional[int]) -> Optional[int]:
        if self._log is not None:
            ts = self._log.first_timestamp(tab_id)
            if ts is not None:
                return ts
        first = self._index.first(tab_id)
        return first.ts if first is not None else None


def slice_events(event_log: EventLog, resolution: Resolution) -> List[Dict[str, Any]]:
    """
    Event payloads needed to reconstruct the resolved state.

    Returns the resolved tab's events from the start of the log up to and
    including the event that produced the resolved frame.
    """
    return event_log.tab_prefix(resolution.tab_id, resolution.frame.i)
