"""
Run layout - workspace paths, run directories, metadata and the current pointer.

    <work_dir>/.rce/
        control.sock             control endpoint (fixed path)
        storage-state.json       cookies/localStorage reused across runs
        current -> data/<run-id> pointer to the active (or last) run
        data/<run-id>/
            meta/recorder.meta.json, meta/tabs.jsonl
            rrweb/events.rrweb.jsonl, rrweb/frames*.jsonl, rrweb/frames.txt
            actions/actions.jsonl
            logs/*.jsonl, logs/recorder.log, logs/server.log
            screenshots/latest.png, screenshots/latest.tab-N.png
            screenshots/ snapshots/ diffs/
            main.pid browser.pid server.pid
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rce_engine.exceptions import IOFailureError
from rce_engine.timeline.models import now_ms

logger = logging.getLogger(__name__)

RUN_SUBDIRS = ("meta", "logs", "rrweb", "screenshots", "diffs", "actions", "snapshots")


def new_run_id(moment: Optional[datetime] = None) -> str:
    """Run id in local time: ``YYYY-MM-DD_HH-MM-SS-mmm``."""
    moment = moment or datetime.now()
    return moment.strftime("%Y-%m-%d_%H-%M-%S-") + f"{moment.microsecond // 1000:03d}"


def latest_screenshot_name(tab_id: Optional[int] = None) -> str:
    """``latest.png`` for the primary view, ``latest.tab-N.png`` per tab."""
    return "latest.png" if tab_id is None else f"latest.tab-{tab_id}.png"


class RunPaths:
    """Paths inside one run directory."""

    def __init__(self, run_dir: Union[str, Path]):
        self.run_dir = Path(run_dir)

    @property
    def run_id(self) -> str:
        return self.run_dir.name

    @property
    def meta_dir(self) -> Path:
        return self.run_dir / "meta"

    @property
    def logs_dir(self) -> Path:
        return self.run_dir / "logs"

    @property
    def rrweb_dir(self) -> Path:
        return self.run_dir / "rrweb"

    @property
    def actions_dir(self) -> Path:
        return self.run_dir / "actions"

    @property
    def screenshots_dir(self) -> Path:
        return self.run_dir / "screenshots"

    @property
    def snapshots_dir(self) -> Path:
        return self.run_dir / "snapshots"

    @property
    def diffs_dir(self) -> Path:
        return self.run_dir / "diffs"

    @property
    def meta_file(self) -> Path:
        return self.meta_dir / "recorder.meta.json"

    @property
    def tabs_file(self) -> Path:
        return self.meta_dir / "tabs.jsonl"

    @property
    def events_file(self) -> Path:
        return self.rrweb_dir / "events.rrweb.jsonl"

    @property
    def frames_file(self) -> Path:
        return self.rrweb_dir / "frames.jsonl"

    @property
    def actions_file(self) -> Path:
        return self.actions_dir / "actions.jsonl"

    @property
    def recorder_log(self) -> Path:
        return self.logs_dir / "recorder.log"

    @property
    def server_log(self) -> Path:
        return self.logs_dir / "server.log"

    def latest_screenshot(self, tab_id: Optional[int] = None) -> Path:
        return self.screenshots_dir / latest_screenshot_name(tab_id)

    def log_file(self, name: str) -> Path:
        """A capture log such as ``console`` or ``network_errors``."""
        return self.logs_dir / f"{name}.jsonl"

    def pid_file(self, name: str) -> Path:
        """``main``, ``browser`` or ``server``."""
        return self.run_dir / f"{name}.pid"

    def create(self) -> "RunPaths":
        try:
            for sub in RUN_SUBDIRS:
                (self.run_dir / sub).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailureError(f"Failed to create run directory: {e}", path=str(self.run_dir))
        return self

    def exists(self) -> bool:
        return self.run_dir.is_dir()

    def __repr__(self) -> str:
        return f"RunPaths({str(self.run_dir)!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RunPaths) and self.run_dir == other.run_dir

    def __hash__(self) -> int:
        return hash(self.run_dir)


@dataclass
class RunMeta:
    """
    Contents of ``meta/recorder.meta.json``.

    Attributes:
        run_id: Run identifier (directory name)
        run_dir: Absolute run directory
        started_at: Start time (epoch ms)
        url: Application URL being recorded
        viewport: ``{"width", "height"}``
        headless: Whether the browser runs headless
        active: False once the run has been stopped
        stopped_at: Stop time (epoch ms), if stopped
    """
    run_id: str
    run_dir: str
    started_at: int = field(default_factory=now_ms)
    url: str = ""
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1280, "height": 800})
    headless: bool = False
    active: bool = True
    stopped_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "runId": self.run_id,
            "runDir": self.run_dir,
            "startedAt": self.started_at,
            "url": self.url,
            "viewport": self.viewport,
            "headless": self.headless,
            "active": self.active,
        }
        if self.stopped_at is not None:
            data["stoppedAt"] = self.stopped_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunMeta":
        return cls(
            run_id=data["runId"],
            run_dir=data["runDir"],
            started_at=int(data.get("startedAt", 0)),
            url=data.get("url", ""),
            viewport=data.get("viewport") or {"width": 1280, "height": 800},
            headless=bool(data.get("headless", False)),
            active=bool(data.get("active", True)),
            stopped_at=data.get("stoppedAt"),
        )

    def save(self, path: Union[str, Path]) -> None:
        """Write atomically (temp file + rename)."""
        target = Path(path)
        tmp = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            raise IOFailureError(f"Failed to write run metadata: {e}", path=str(target))

    @classmethod
    def load(cls, path: Union[str, Path]) -> Optional["RunMeta"]:
        """Read metadata; None if the file is missing or unreadable."""
        p = Path(path)
        try:
            return cls.from_dict(json.loads(p.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable run metadata {p}: {e}")
            return None


class CurrentRunPointer:
    """
    The ``current`` symlink naming the active run.

    Replacement is atomic: a temporary link is created next to the pointer
    and renamed over it, so readers see either the old or the new run.
    """

    def __init__(self, link_path: Union[str, Path]):
        self._link = Path(link_path)

    @property
    def path(self) -> Path:
        return self._link

    def read(self) -> Optional[RunPaths]:
        """Run the pointer names, or None if unset or dangling."""
        try:
            target = os.readlink(self._link)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise IOFailureError(f"Failed to read current run pointer: {e}", path=str(self._link))
        run_dir = (self._link.parent / target).resolve()
        if not run_dir.is_dir():
            logger.warning(f"Current run pointer is dangling: {target}")
            return None
        return RunPaths(run_dir)

    def set(self, run_dir: Union[str, Path]) -> None:
        tmp = self._link.with_name(f"{self._link.name}.tmp-{os.getpid()}")
        try:
            self._link.parent.mkdir(parents=True, exist_ok=True)
            if tmp.is_symlink() or tmp.exists():
                tmp.unlink()
            os.symlink(str(Path(run_dir).resolve()), tmp, target_is_directory=True)
            os.replace(tmp, self._link)
        except OSError as e:
            raise IOFailureError(f"Failed to update current run pointer: {e}", path=str(self._link))
        logger.debug(f"Current run -> {run_dir}")

    def clear(self) -> None:
        try:
            self._link.unlink()
        except FileNotFoundError:
            pass


class Workspace:
    """
    The ``.rce`` directory of a project.

    Example:
        >>> workspace = Workspace.from_settings(get_settings())
        >>> workspace.current.read()
        RunPaths('/project/.rce/data/2024-05-01_10-20-30-500')
    """

    def __init__(self, root: Union[str, Path], socket_name: str = "control.sock"):
        self.root = Path(root).resolve()
        self.socket_name = socket_name
        self.current = CurrentRunPointer(self.root / "current")

    @classmethod
    def from_settings(cls, settings: Any) -> "Workspace":
        return cls(settings.workspace.root, socket_name=settings.control.socket_name)

    @property
    def data_dir(self) -> Path:
        return self.root / "data"

    @property
    def socket_path(self) -> Path:
        return self.root / self.socket_name

    @property
    def storage_state_path(self) -> Path:
        return self.root / "storage-state.json"

    def ensure(self) -> "Workspace":
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailureError(f"Failed to create workspace: {e}", path=str(self.root))
        return self

    def new_run(self, run_id: Optional[str] = None) -> RunPaths:
        """Create the directory tree of a new run (not yet current)."""
        self.ensure()
        return RunPaths(self.data_dir / (run_id or new_run_id())).create()

    def current_run(self) -> Optional[RunPaths]:
        return self.current.read()

    def clear_storage_state(self) -> bool:
        """Forget saved cookies/localStorage; True if a file was removed."""
        try:
            self.storage_state_path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Storage state cleared (fresh login required)")
        return True
