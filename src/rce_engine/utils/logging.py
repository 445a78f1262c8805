"""
Logging utilities for RCE Engine.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler


class JsonLineFormatter(logging.Formatter):
    """Formats each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record),
            "ts": int(record.created * 1000),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    json_format: bool = False,
) -> None:
    """
    Configure logging for the application.

    The recorder runs in the background and is driven by other processes,
    so all console output goes to stderr; stdout stays free for command
    results.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        json_format: Use JSON format for the log file
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console = Console(stderr=True)
    console_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(log_level)
    root_logger.addHandler(console_handler)

    if log_file:
        add_file_handler(log_file, level=level, json_format=json_format)


def add_file_handler(
    log_file: Union[str, Path],
    level: str = "INFO",
    json_format: bool = False,
) -> logging.Handler:
    """
    Attach a file handler to the root logger.

    Args:
        log_file: Path to the log file (parent directories are created)
        level: Log level for this handler
        json_format: Write one JSON object per line

    Returns:
        The installed handler, so callers can remove it again
    """
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if json_format:
        formatter: logging.Formatter = JsonLineFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    file_handler.setFormatter(formatter)
    logging.getLogger().addHandler(file_handler)
    return file_handler
