"""
Newline-delimited JSON helpers.

Every persistent stream in a run directory is a ``.jsonl`` file: one
compact JSON object per line, append-only. Readers are tolerant and skip
lines that do not parse (a crash mid-append leaves at most one such line
at the tail); writers are strict and raise IOFailureError.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterator, Union

from rce_engine.exceptions import IOFailureError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def dumps_line(obj: Any) -> str:
    """Serialize one record in the canonical compact form (no newline)."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def ensure_line_boundary(path: PathLike) -> None:
    """
    Make sure the next append starts on a fresh line.

    If a previous writer died between writing a record and its newline,
    the partial record is sealed with a newline so it stays a single
    (skippable) malformed line instead of corrupting the next record.
    """
    p = Path(path)
    try:
        size = p.stat().st_size
    except FileNotFoundError:
        return
    if size == 0:
        return
    try:
        with open(p, "rb+") as f:
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                f.write(b"\n")
                logger.warning(f"Sealed partial trailing line in {p}")
    except OSError as e:
        raise IOFailureError(f"Failed to repair {p}: {e}", path=str(p))


def append_json_line(path: PathLike, obj: Any, durable: bool = False) -> None:
    """
    Append one record to a JSONL file, creating parent directories.

    Args:
        path: Target file
        obj: JSON-serializable record
        durable: fsync before returning
    """
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "a", encoding="utf-8") as f:
            f.write(dumps_line(obj) + "\n")
            if durable:
                f.flush()
                os.fsync(f.fileno())
    except (OSError, TypeError, ValueError) as e:
        raise IOFailureError(f"Failed to append to {p}: {e}", path=str(p))


def iter_json_lines(path: PathLike) -> Iterator[Any]:
    """
    Lazily yield parsed records from a JSONL file.

    A missing file yields nothing. Blank lines are ignored; malformed lines
    are skipped with a warning.
    """
    p = Path(path)
    try:
        f = open(p, "r", encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return
    except OSError as e:
        raise IOFailureError(f"Failed to open {p}: {e}", path=str(p))

    with f:
        for line_no, line in enumerate(f, start=1):
            text = line.strip()
            if not text:
                continue
            try:
                yield json.loads(text)
            except json.JSONDecodeError as e:
                logger.warning(
                    f"Skipping malformed line {line_no} in {p.name}: {e} "
                    f"(preview: {text[:100]!r})"
                )
