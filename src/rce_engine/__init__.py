"""
RCE Engine - a browser session recorder with time travel.

A recorder process drives a real browser, captures every tab's DOM as an
rrweb event stream, indexes the stream into gapless frames and takes
commands over a local control channel. Any past frame can later be
resolved and rebuilt as a screenshot or an HTML snapshot.

Example:
    >>> from rce_engine import Recorder, get_settings
    >>> recorder = Recorder(get_settings())
    >>> await recorder.run()
"""

__version__ = "0.1.0"

# Public API exports
from rce_engine.config import Settings, get_settings, load_config
from rce_engine.control import ControlClient
from rce_engine.recorder import Recorder
from rce_engine.replay import TimeTravelService
from rce_engine.session import SessionLifecycleManager, Workspace

__all__ = [
    "ControlClient",
    "Recorder",
    "SessionLifecycleManager",
    "Settings",
    "TimeTravelService",
    "Workspace",
    "get_settings",
    "load_config",
    "__version__",
]
