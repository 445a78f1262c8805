"""
Actions module - the recorder's command set and its dispatcher.
"""

from rce_engine.actions.commands import (
    Tool,
    TOOL_ARGS,
    NAVIGATION_TOOLS,
    NO_REFRESH_TOOLS,
    ActionArgs,
    ActionResult,
    DragPoint,
    parse_command,
    parse_tool,
)
from rce_engine.actions.dispatcher import CommandDispatcher

__all__ = [
    "Tool",
    "TOOL_ARGS",
    "NAVIGATION_TOOLS",
    "NO_REFRESH_TOOLS",
    "ActionArgs",
    "ActionResult",
    "DragPoint",
    "parse_command",
    "parse_tool",
    "CommandDispatcher",
]
