"""
Session Lifecycle Manager - start, stop and restart of a recording run.

One run is active per workspace. The ``current`` pointer names it, and the
pid files inside its directory act as the lock: a pointer whose run still
holds pid files after its owner died is a stale lock, cleared by running the
full stop sequence before a new run starts.
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from rce_engine.config.settings import LifecycleSettings
from rce_engine.exceptions import AlreadyInProgressError, NoActiveSessionError
from rce_engine.session.processes import (
    PID_NAMES,
    endpoint_released,
    pid_alive,
    port_released,
    read_pid_file,
    remove_pid_file,
    terminate_pid,
    write_pid_file,
)
from rce_engine.session.run import RunMeta, RunPaths, Workspace
from rce_engine.session.teardown import TeardownReport, TeardownStep, run_teardown
from rce_engine.timeline.models import now_ms
from rce_engine.utils.retry import poll_until

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    INACTIVE = "inactive"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class SessionLifecycleManager:
    """
    Drives the run state machine INACTIVE -> STARTING -> ACTIVE -> STOPPING -> INACTIVE.

    Example:
        >>> manager = SessionLifecycleManager(workspace, settings.lifecycle)
        >>> meta = await manager.start(url="http://localhost:3000")
        >>> report = await manager.stop()
    """

    def __init__(
        self,
        workspace: Workspace,
        settings: Optional[LifecycleSettings] = None,
        pid: Optional[int] = None,
    ):
        """
        Args:
            workspace: Workspace holding the runs
            settings: Timings (defaults if None)
            pid: Pid recorded as ``main.pid`` (this process by default)
        """
        self._workspace = workspace
        self._settings = settings or LifecycleSettings()
        self._pid = pid if pid is not None else os.getpid()
        self._state = LifecycleState.INACTIVE
        self._run: Optional[RunPaths] = None
        self._meta: Optional[RunMeta] = None
        self._extra_steps: List[TeardownStep] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def run(self) -> Optional[RunPaths]:
        """Run started by this manager, if any."""
        return self._run

    @property
    def meta(self) -> Optional[RunMeta]:
        return self._meta

    def current_run(self) -> Optional[RunPaths]:
        return self._workspace.current_run()

    def holds_lock(self, run: Optional[RunPaths]) -> bool:
        """True if the run still has any pid file."""
        if run is None:
            return False
        return any(run.pid_file(name).exists() for name in PID_NAMES)

    def add_teardown_step(self, step: TeardownStep) -> None:
        """Extra step run before the built-in stop steps (by an in-process stop only)."""
        self._extra_steps.append(step)

    async def start(
        self,
        url: str = "",
        viewport: Optional[Dict[str, int]] = None,
        headless: bool = False,
    ) -> RunMeta:
        """
        Start a new run.

        Raises:
            AlreadyInProgressError: If a start is in progress or a run is active
            IOFailureError: If the run directory cannot be created
        """
        if self._state != LifecycleState.INACTIVE:
            raise AlreadyInProgressError("start", self._state.value)

        self._state = LifecycleState.STARTING
        try:
            previous = self.current_run()
            if self.holds_lock(previous):
                logger.info(f"Stopping existing instance ({previous.run_id})...")
                await self._stop_run(previous)
                await self.wait_for_release()

            run = self._workspace.new_run()
            meta = RunMeta(
                run_id=run.run_id,
                run_dir=str(run.run_dir),
                url=url,
                viewport=viewport or {"width": 1280, "height": 800},
                headless=headless,
            )
            meta.save(run.meta_file)
            write_pid_file(run.pid_file("main"), self._pid)
            self._workspace.current.set(run.run_dir)
        except BaseException:
            self._state = LifecycleState.INACTIVE
            raise

        self._run = run
        self._meta = meta
        self._state = LifecycleState.ACTIVE
        logger.info(f"Run {run.run_id} started in {run.run_dir}")
        return meta

    async def wait_for_release(self) -> bool:
        """
        Poll until the control endpoint (and the optional port) is free.

        Returns:
            False if the budget ran out; callers proceed anyway
        """
        socket_path = self._workspace.socket_path
        port = self._settings.port

        async def released() -> bool:
            if not endpoint_released(socket_path):
                return False
            return port is None or port_released(port)

        ok = await poll_until(
            released,
            attempts=self._settings.release_poll_attempts,
            interval_ms=self._settings.release_poll_interval_ms,
            description="control endpoint release",
        )
        if not ok:
            logger.warning("Control endpoint still busy after polling; proceeding anyway")
        return ok

    async def stop(self) -> TeardownReport:
        """
        Stop the current run.

        A stop issued while another stop is in progress returns a skipped,
        empty report.

        Raises:
            NoActiveSessionError: If no run is current
        """
        if self._state == LifecycleState.STOPPING:
            logger.debug("Stop already in progress")
            return TeardownReport(skipped=True)

        run = self._run or self.current_run()
        if run is None:
            raise NoActiveSessionError("No active session")

        previous_state = self._state
        self._state = LifecycleState.STOPPING
        try:
            report = await self._stop_run(run, self._extra_steps if previous_state == LifecycleState.ACTIVE else [])
        finally:
            self._state = LifecycleState.INACTIVE
            self._run = None
            self._extra_steps = []

        if report.ok:
            logger.info(f"Run {run.run_id} stopped")
        else:
            logger.warning(f"Run {run.run_id} stopped with {len(report.failed)} failed step(s)")
        return report

    async def restart(
        self,
        url: str = "",
        viewport: Optional[Dict[str, int]] = None,
        headless: bool = False,
    ) -> RunMeta:
        """Stop (if anything is running), settle, then start again."""
        try:
            await self.stop()
        except NoActiveSessionError:
            logger.info("Nothing to stop; starting fresh")
        if self._settings.restart_settle_ms:
            await asyncio.sleep(self._settings.restart_settle_ms / 1000)
        return await self.start(url=url, viewport=viewport, headless=headless)

    def status(self) -> Dict[str, Any]:
        """Current run, its metadata and which recorded processes are alive."""
        run = self.current_run()
        if run is None:
            return {"running": False, "run": None}
        processes: Dict[str, Any] = {}
        for name in PID_NAMES:
            pid = read_pid_file(run.pid_file(name))
            if pid is not None:
                processes[name] = {"pid": pid, "alive": pid_alive(pid)}
        meta = RunMeta.load(run.meta_file)
        main = processes.get("main")
        return {
            "running": bool(main and main["alive"]),
            "run": run.run_id,
            "runDir": str(run.run_dir),
            "meta": meta.to_dict() if meta else None,
            "processes": processes,
            "endpoint": not endpoint_released(self._workspace.socket_path),
        }

    async def _stop_run(self, run: RunPaths, extra_steps: Optional[List[TeardownStep]] = None) -> TeardownReport:
        steps: List[TeardownStep] = list(extra_steps or [])
        for name in PID_NAMES:
            steps.append(TeardownStep(name=f"terminate {name}", action=self._terminate_step(run, name)))
        steps.append(TeardownStep(name="remove control endpoint", action=self._remove_endpoint))
        steps.append(TeardownStep(name="mark run inactive", action=lambda: self._mark_inactive(run)))
        return await run_teardown(steps, attempts=self._settings.teardown_attempts)

    def _terminate_step(self, run: RunPaths, name: str):
        async def action() -> str:
            path = run.pid_file(name)
            pid = read_pid_file(path)
            if pid is None:
                remove_pid_file(path)
                return "no_pid"
            outcome = await terminate_pid(pid, grace_ms=self._settings.kill_grace_ms)
            remove_pid_file(path)
            logger.info(f"Stop {name} ({pid}): {outcome}")
            return outcome
        return action

    def _remove_endpoint(self) -> bool:
        path = self._workspace.socket_path
        if not path.exists():
            return False
        if not endpoint_released(path):
            # A live server owns it; it removes the file itself on close
            logger.debug(f"Control endpoint {path} still accepting; leaving it")
            return False
        path.unlink()
        return True

    def _mark_inactive(self, run: RunPaths) -> bool:
        meta = RunMeta.load(run.meta_file)
        if meta is None:
            return False
        meta.active = False
        meta.stopped_at = now_ms()
        meta.save(run.meta_file)
        if self._meta is not None and self._meta.run_id == meta.run_id:
            self._meta = meta
        return True
