"""
Timeline data model - event records, frame entries and tabs.

Event payloads are produced by the capture library (rrweb) and are opaque
here: the timeline only reads their ``timestamp`` (epoch ms) and ``type``.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# rrweb EventType.Custom - out-of-band markers that never become frames
CUSTOM_EVENT_TYPE = 5

PRIMARY_TAB_ID = 0


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class EventRecord:
    """
    One line of the raw event log.

    Attributes:
        tab_id: Tab that emitted the event
        event: Opaque capture payload (carries 'timestamp' and 'type')
    """
    tab_id: int
    event: Dict[str, Any]

    @property
    def timestamp(self) -> Optional[int]:
        ts = self.event.get("timestamp") if isinstance(self.event, dict) else None
        return int(ts) if isinstance(ts, (int, float)) else None

    @property
    def event_type(self) -> Any:
        return self.event.get("type") if isinstance(self.event, dict) else None

    @property
    def is_custom(self) -> bool:
        return is_custom_event(self.event)

    def to_dict(self) -> Dict[str, Any]:
        return {"tabId": self.tab_id, "event": self.event}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventRecord":
        return cls(tab_id=int(data.get("tabId", PRIMARY_TAB_ID)), event=data.get("event") or {})


def is_custom_event(payload: Any) -> bool:
    """True for custom marker events, which are logged but not indexed."""
    return isinstance(payload, dict) and payload.get("type") == CUSTOM_EVENT_TYPE


def is_indexable(payload: Any) -> bool:
    """
    True for events that get a frame entry.

    Custom markers are excluded, and so is anything without a numeric
    timestamp since it cannot be placed on the timeline.
    """
    if not isinstance(payload, dict) or is_custom_event(payload):
        return False
    ts = payload.get("timestamp")
    return isinstance(ts, (int, float)) and not isinstance(ts, bool)


@dataclass(frozen=True)
class FrameEntry:
    """
    An indexed point in the event stream.

    Attributes:
        ts: Event timestamp (epoch ms)
        k: Ordinal among events sharing ``ts`` (arrival order)
        i: Gapless position among all non-custom events of the run
        tab_id: Tab the event belongs to
    """
    ts: int
    k: int
    i: int
    tab_id: int = PRIMARY_TAB_ID

    @property
    def key(self) -> str:
        """The ``ts#k`` form used by frames.txt and locators."""
        return f"{self.ts}#{self.k}"

    def to_dict(self) -> Dict[str, Any]:
        # Key order is part of the file format (rebuilt files compare byte-for-byte)
        return {"ts": self.ts, "k": self.k, "i": self.i, "tabId": self.tab_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FrameEntry":
        return cls(
            ts=int(data["ts"]),
            k=int(data["k"]),
            i=int(data["i"]),
            tab_id=int(data.get("tabId", PRIMARY_TAB_ID)),
        )


@dataclass
class Tab:
    """
    A browser tab observed during the run.

    Attributes:
        tab_id: Tab identifier (0 is the primary page)
        url: Last known URL
        first_seen_at: When the tab was first observed (epoch ms)
        last_seen_at: When the tab last emitted an event (epoch ms)
    """
    tab_id: int
    url: str = ""
    first_seen_at: int = field(default_factory=now_ms)
    last_seen_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tabId": self.tab_id,
            "url": self.url,
            "firstSeenAt": self.first_seen_at,
            "lastSeenAt": self.last_seen_at,
        }
