"""
Utilities module - Common utility functions.
"""

from rce_engine.utils.logging import setup_logging, add_file_handler
from rce_engine.utils.retry import retry_async, poll_until, RetryConfig
from rce_engine.utils.jsonl import (
    append_json_line,
    iter_json_lines,
    ensure_line_boundary,
    dumps_line,
)

__all__ = [
    "setup_logging",
    "add_file_handler",
    "retry_async",
    "poll_until",
    "RetryConfig",
    "append_json_line",
    "iter_json_lines",
    "ensure_line_boundary",
    "dumps_line",
]
