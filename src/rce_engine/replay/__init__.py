"""
Replay module - rebuilding recorded state at a past frame.
"""

from rce_engine.replay.replayer import PlaywrightReplayer, READY_TIMEOUT_MS
from rce_engine.replay.timetravel import TimeTravelService

__all__ = [
    "PlaywrightReplayer",
    "READY_TIMEOUT_MS",
    "TimeTravelService",
]
