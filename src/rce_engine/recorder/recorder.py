"""
Recorder - the long-running process behind ``rce dev``.

Ties the pieces of a run together: lifecycle (run directory, pointer,
pid files), timeline store and event pipeline, the optional app dev server,
the recorded browser and the control server. A stop request (signal or
``request_stop()``) runs one ordered teardown.
"""

import asyncio
import logging
import shlex
import signal
from typing import Any, Callable, List, Optional

from rce_engine.actions.dispatcher import CommandDispatcher
from rce_engine.browsers.playwright_browser import PlaywrightBrowser, TabListener
from rce_engine.config.settings import Settings
from rce_engine.control.server import ControlServer
from rce_engine.exceptions import ActionFailedError, ActionTimeoutError
from rce_engine.interfaces.browser import IBrowserCapability
from rce_engine.session.lifecycle import SessionLifecycleManager
from rce_engine.session.processes import remove_pid_file, write_pid_file
from rce_engine.session.run import RunMeta, RunPaths, Workspace
from rce_engine.session.teardown import TeardownReport, TeardownStep
from rce_engine.timeline.pipeline import BackpressurePolicy, EventPipeline
from rce_engine.timeline.store import TimelineStore
from rce_engine.utils.logging import add_file_handler

logger = logging.getLogger(__name__)

BrowserFactory = Callable[[Settings, RunPaths, int, TabListener], IBrowserCapability]


def default_browser_factory(
    settings: Settings,
    run_paths: RunPaths,
    started_at: int,
    on_tab: TabListener,
) -> IBrowserCapability:
    return PlaywrightBrowser(settings.browser, logs_dir=run_paths.logs_dir, started_at=started_at, on_tab=on_tab)


class Recorder:
    """
    One recording run.

    Example:
        >>> recorder = Recorder(get_settings())
        >>> report = await recorder.run()   # until Ctrl+C or `rce stop`
    """

    def __init__(
        self,
        settings: Settings,
        workspace: Optional[Workspace] = None,
        browser_factory: Optional[BrowserFactory] = None,
        lifecycle: Optional[SessionLifecycleManager] = None,
    ):
        self._settings = settings
        self._workspace = workspace or Workspace.from_settings(settings)
        self._browser_factory = browser_factory or default_browser_factory
        self._lifecycle = lifecycle or SessionLifecycleManager(self._workspace, settings.lifecycle)

        self._meta: Optional[RunMeta] = None
        self._paths: Optional[RunPaths] = None
        self._store: Optional[TimelineStore] = None
        self._pipeline: Optional[EventPipeline] = None
        self._browser: Optional[IBrowserCapability] = None
        self._dispatcher: Optional[CommandDispatcher] = None
        self._server: Optional[ControlServer] = None
        self._dev_server: Optional[asyncio.subprocess.Process] = None
        self._dev_server_log: Any = None
        self._storage_task: Optional[asyncio.Task] = None
        self._latest_task: Optional[asyncio.Task] = None
        self._log_handler: Optional[logging.Handler] = None
        self._stop_requested: Optional[asyncio.Event] = None

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def lifecycle(self) -> SessionLifecycleManager:
        return self._lifecycle

    @property
    def meta(self) -> Optional[RunMeta]:
        return self._meta

    @property
    def run_paths(self) -> Optional[RunPaths]:
        return self._paths

    @property
    def store(self) -> Optional[TimelineStore]:
        return self._store

    @property
    def pipeline(self) -> Optional[EventPipeline]:
        return self._pipeline

    @property
    def browser(self) -> Optional[IBrowserCapability]:
        return self._browser

    @property
    def dispatcher(self) -> Optional[CommandDispatcher]:
        return self._dispatcher

    @property
    def server(self) -> Optional[ControlServer]:
        return self._server

    async def start(self, restart: bool = False) -> RunMeta:
        """
        Bring the run up.

        Args:
            restart: Stop the current run first and wait the settle interval

        Raises:
            AlreadyInProgressError: If this recorder is already starting
            BrowserLaunchError: If the browser cannot be launched
        """
        settings = self._settings
        self._stop_requested = asyncio.Event()

        start = self._lifecycle.restart if restart else self._lifecycle.start
        meta = await start(
            url=settings.recorder.url,
            viewport=settings.browser.viewport,
            headless=settings.browser.headless,
        )
        self._meta = meta
        self._paths = self._lifecycle.run
        paths = self._paths
        for step in self._teardown_steps():
            self._lifecycle.add_teardown_step(step)

        try:
            self._log_handler = add_file_handler(paths.recorder_log, level=settings.logging.level)

            self._store = TimelineStore.open(paths, durable=settings.recorder.durable_writes, started_at=meta.started_at)
            self._pipeline = EventPipeline(
                self._store.record,
                maxsize=settings.recorder.queue_size,
                policy=BackpressurePolicy(settings.recorder.backpressure),
            )
            self._pipeline.start()

            await self._start_dev_server(paths)

            self._browser = self._browser_factory(settings, paths, meta.started_at, self._store.tabs.register)
            await self._browser.launch(
                event_sink=self._pipeline.submit,
                storage_state=self._workspace.storage_state_path if settings.browser.persist_storage_state else None,
            )
            if self._browser.pid:
                write_pid_file(paths.pid_file("browser"), self._browser.pid)
            if settings.recorder.url:
                logger.info(f"Starting recorder for {settings.recorder.url}")
                try:
                    await self._browser.navigate(settings.recorder.url)
                except (ActionFailedError, ActionTimeoutError) as e:
                    logger.warning(f"Initial navigation failed: {e.message}")

            self._dispatcher = CommandDispatcher(
                self._browser,
                actions_log=paths.actions_file,
                screenshots_dir=paths.screenshots_dir,
                resolver_factory=self._store.resolver,
                started_at=meta.started_at,
                latest_screenshots=settings.recorder.latest_screenshots,
            )
            self._server = ControlServer(self._workspace.socket_path, handler=self._dispatcher.handle_request)
            await self._server.start()

            if settings.browser.persist_storage_state:
                self._storage_task = asyncio.create_task(self._persist_storage_state(), name="rce-storage-state")
            if settings.recorder.latest_screenshots and settings.recorder.latest_screenshot_interval_s:
                self._latest_task = asyncio.create_task(
                    self._refresh_latest_screenshots(), name="rce-latest-screenshot"
                )
        except BaseException:
            logger.error("Recorder failed to start; tearing down")
            await self.stop()
            raise

        logger.info(f"Run: {meta.run_id}")
        logger.info(f"Files in: {meta.run_dir}")
        logger.info('Press Ctrl+C to stop, or run "rce stop" from another shell')
        return meta

    def request_stop(self) -> None:
        """Ask a running ``run()`` to tear down (signal-safe)."""
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def wait(self) -> None:
        if self._stop_requested is None:
            return
        await self._stop_requested.wait()

    async def run(
        self,
        restart: bool = False,
        on_started: Optional[Callable[[RunMeta], Any]] = None,
    ) -> TeardownReport:
        """Start, wait for SIGINT/SIGTERM or ``request_stop()``, then stop."""
        meta = await self.start(restart=restart)
        if on_started is not None:
            on_started(meta)
        loop = asyncio.get_running_loop()
        installed: List[int] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig!r}")
        try:
            await self.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
        logger.info("Stopping...")
        return await self.stop()

    async def stop(self) -> TeardownReport:
        """Run the ordered teardown (a second concurrent call is a no-op)."""
        if self._meta is None:
            return TeardownReport(skipped=True)
        report = await self._lifecycle.stop()
        if not report.skipped:
            logger.info("Cleanup complete")
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None
        return report

    # Teardown

    def _teardown_steps(self) -> List[TeardownStep]:
        return [
            TeardownStep("stop storage-state task", self._cancel_storage_task, attempts=1),
            TeardownStep("stop latest-screenshot task", self._cancel_latest_task, attempts=1),
            TeardownStep("stop control server", self._stop_server),
            TeardownStep("drain event pipeline", self._close_pipeline, attempts=1),
            TeardownStep("close timeline", self._close_store, attempts=1),
            TeardownStep("save storage state", self._save_storage_state),
            TeardownStep("close browser", self._close_browser),
            TeardownStep("terminate dev server", self._stop_dev_server),
        ]

    async def _cancel_storage_task(self) -> None:
        await _cancel(self._storage_task)
        self._storage_task = None

    async def _cancel_latest_task(self) -> None:
        await _cancel(self._latest_task)
        self._latest_task = None

    async def _stop_server(self) -> None:
        if self._server is not None:
            await self._server.stop()

    async def _close_pipeline(self) -> Optional[dict]:
        if self._pipeline is None:
            return None
        stats = await self._pipeline.close()
        return stats.to_dict()

    def _close_store(self) -> None:
        if self._store is not None:
            self._store.close()

    async def _save_storage_state(self) -> bool:
        if self._browser is None or not self._settings.browser.persist_storage_state:
            return False
        return await self._browser.save_storage_state(self._workspace.storage_state_path)

    async def _close_browser(self) -> None:
        if self._browser is None:
            return
        await self._browser.close()
        if self._paths is not None:
            remove_pid_file(self._paths.pid_file("browser"))

    async def _persist_storage_state(self) -> None:
        interval = self._settings.browser.storage_state_interval_s
        path = self._workspace.storage_state_path
        while True:
            await asyncio.sleep(interval)
            if self._browser is not None and await self._browser.save_storage_state(path):
                logger.debug("Storage state saved")

    async def _refresh_latest_screenshots(self) -> None:
        interval = self._settings.recorder.latest_screenshot_interval_s
        while True:
            if self._browser is not None and self._dispatcher is not None:
                for tab in self._browser.tabs():
                    if not tab.closed:
                        await self._dispatcher.refresh_latest(tab.tab_id)
            await asyncio.sleep(interval)

    # Dev server

    async def _start_dev_server(self, paths: RunPaths) -> None:
        command = self._settings.recorder.server_cmd
        if not command or command == "none":
            return
        log_file = open(paths.server_log, "ab")
        try:
            self._dev_server = await asyncio.create_subprocess_exec(
                *shlex.split(command),
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self._settings.workspace.work_dir,
            )
        except OSError:
            log_file.close()
            raise
        self._dev_server_log = log_file
        write_pid_file(paths.pid_file("server"), self._dev_server.pid)
        logger.info(f"Starting server: {command}")
        await asyncio.sleep(self._settings.recorder.boot_wait_ms / 1000)

    async def _stop_dev_server(self) -> Optional[int]:
        proc = self._dev_server
        if proc is None:
            return None
        if proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=max(self._settings.lifecycle.kill_grace_ms, 1000) / 1000)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if self._dev_server_log is not None:
            self._dev_server_log.close()
            self._dev_server_log = None
        if self._paths is not None:
            remove_pid_file(self._paths.pid_file("server"))
        self._dev_server = None
        return proc.returncode


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
