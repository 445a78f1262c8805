"""
Timeline module - event log, frame index and time-travel resolution.
"""

from rce_engine.timeline.models import (
    CUSTOM_EVENT_TYPE,
    PRIMARY_TAB_ID,
    EventRecord,
    FrameEntry,
    Tab,
    is_custom_event,
    is_indexable,
)
from rce_engine.timeline.event_log import EventLog
from rce_engine.timeline.frame_index import (
    FrameCounter,
    FrameIndex,
    FrameIndexer,
    rebuild_index,
)
from rce_engine.timeline.resolver import (
    Locator,
    IndexLocator,
    FramePairLocator,
    TimestampLocator,
    OffsetLocator,
    WallClockLocator,
    Resolution,
    TimeTravelResolver,
    parse_locator,
    slice_events,
)
from rce_engine.timeline.tabs import TabRegistry
from rce_engine.timeline.store import StoredEvent, TimelineStore
from rce_engine.timeline.pipeline import BackpressurePolicy, EventPipeline, PipelineStats

__all__ = [
    "CUSTOM_EVENT_TYPE",
    "PRIMARY_TAB_ID",
    "EventRecord",
    "FrameEntry",
    "Tab",
    "is_custom_event",
    "is_indexable",
    "EventLog",
    "FrameCounter",
    "FrameIndex",
    "FrameIndexer",
    "rebuild_index",
    "Locator",
    "IndexLocator",
    "FramePairLocator",
    "TimestampLocator",
    "OffsetLocator",
    "WallClockLocator",
    "Resolution",
    "TimeTravelResolver",
    "parse_locator",
    "slice_events",
    "TabRegistry",
    "StoredEvent",
    "TimelineStore",
    "BackpressurePolicy",
    "EventPipeline",
    "PipelineStats",
]
