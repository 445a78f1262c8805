"""
Tests for the recorder process (browser faked).
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from rce_engine.control import ControlClient
from rce_engine.exceptions import ActionFailedError, BrowserLaunchError
from rce_engine.interfaces.browser import TabInfo
from rce_engine.recorder import Recorder
from rce_engine.session import LifecycleState, RunMeta


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


async def _write_png(path, full_page=False, tab_id=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(PNG_BYTES)
    return path


class FakeBrowserFactory:
    """Builds mock browsers and remembers what the recorder wired into them."""

    def __init__(self, launch_error=None, navigate_error=None):
        self.launch_error = launch_error
        self.navigate_error = navigate_error
        self.browser = None
        self.event_sink = None
        self.on_tab = None
        self.started_at = None

    def __call__(self, settings, run_paths, started_at, on_tab):
        self.on_tab = on_tab
        self.started_at = started_at
        browser = MagicMock()
        browser.pid = None

        async def launch(event_sink=None, storage_state=None):
            if self.launch_error is not None:
                raise self.launch_error
            self.event_sink = event_sink
            on_tab(0, "about:blank")

        browser.launch = AsyncMock(side_effect=launch)
        browser.navigate = AsyncMock(return_value={"url": settings.recorder.url, "title": "App"})
        if self.navigate_error is not None:
            browser.navigate.side_effect = self.navigate_error
        browser.click = AsyncMock()
        browser.close = AsyncMock()
        browser.save_storage_state = AsyncMock(return_value=True)
        browser.active_tab_id = 0
        browser.tabs = MagicMock(return_value=[TabInfo(tab_id=0, url=settings.recorder.url)])
        browser.screenshot = AsyncMock(side_effect=_write_png)
        self.browser = browser
        return browser


@pytest.fixture
def factory():
    return FakeBrowserFactory()


@pytest.fixture
async def recorder(settings, workspace, factory):
    recorder = Recorder(settings, workspace=workspace, browser_factory=factory)
    yield recorder
    await recorder.stop()


class TestRecorderStart:
    """Test bringing a run up."""

    @pytest.mark.asyncio
    async def test_start(self, recorder, factory, workspace):
        meta = await recorder.start()

        assert recorder.lifecycle.state == LifecycleState.ACTIVE
        assert workspace.current_run().run_id == meta.run_id
        assert workspace.socket_path.exists()
        assert factory.started_at == meta.started_at
        factory.browser.navigate.assert_called_once_with("http://localhost:3000")
        assert recorder.run_paths.recorder_log.exists()

    @pytest.mark.asyncio
    async def test_events_reach_the_timeline(self, recorder, factory):
        await recorder.start()

        await factory.event_sink(0, {"type": 4, "timestamp": 1000, "data": {}})
        await factory.event_sink(0, {"type": 2, "timestamp": 1000, "data": {}})
        await factory.event_sink(0, {"type": 5, "timestamp": 1001, "data": {"tag": "mark"}})
        await recorder.pipeline.drain()

        assert len(recorder.store.event_log) == 3
        assert [f.key for f in recorder.store.index] == ["1000#0", "1000#1"]
        assert (recorder.run_paths.rrweb_dir / "frames.txt").read_text() == "1000#0\n1000#1\n"

    @pytest.mark.asyncio
    async def test_commands_over_control_channel(self, recorder, factory, workspace):
        await recorder.start()
        await factory.event_sink(0, {"type": 2, "timestamp": 1000, "data": {}})
        await recorder.pipeline.drain()

        async with ControlClient(workspace.socket_path, request_timeout_s=5) as client:
            assert await client.ping()
            click = await client.send_action("browser_click", {"selector": "#go"})
            frame = await client.call("timeline_resolve", {"at": "+0"})

        assert click.ok
        factory.browser.click.assert_called_once()
        assert frame["key"] == "1000#0"

        lines = recorder.run_paths.actions_file.read_text().splitlines()
        assert [json.loads(line)["tool"] for line in lines] == ["browser_click", "timeline_resolve"]

    @pytest.mark.asyncio
    async def test_latest_screenshot_kept_fresh(self, recorder, factory):
        await recorder.start()
        latest = recorder.run_paths.latest_screenshot()

        for _ in range(100):
            if latest.exists():
                break
            await asyncio.sleep(0.01)

        assert latest.read_bytes() == PNG_BYTES
        assert recorder.run_paths.latest_screenshot(0).read_bytes() == PNG_BYTES
        factory.browser.screenshot.assert_called_with(recorder.run_paths.latest_screenshot(0), tab_id=0)

    @pytest.mark.asyncio
    async def test_latest_screenshot_disabled(self, settings, workspace, factory):
        settings.recorder.latest_screenshots = False
        recorder = Recorder(settings, workspace=workspace, browser_factory=factory)
        try:
            await recorder.start()
            await recorder.dispatcher.execute("browser_click", {"selector": "#go"})
            await asyncio.sleep(0.05)
        finally:
            await recorder.stop()

        factory.browser.screenshot.assert_not_called()

    @pytest.mark.asyncio
    async def test_navigation_failure_is_not_fatal(self, settings, workspace):
        factory = FakeBrowserFactory(
            navigate_error=ActionFailedError("net::ERR_CONNECTION_REFUSED", action_type="navigate"),
        )
        recorder = Recorder(settings, workspace=workspace, browser_factory=factory)
        try:
            meta = await recorder.start()
            assert meta.active
            assert recorder.server.is_serving
        finally:
            await recorder.stop()

    @pytest.mark.asyncio
    async def test_launch_failure_tears_down(self, settings, workspace):
        factory = FakeBrowserFactory(launch_error=BrowserLaunchError("no chromium"))
        recorder = Recorder(settings, workspace=workspace, browser_factory=factory)

        with pytest.raises(BrowserLaunchError):
            await recorder.start()

        run = workspace.current_run()
        assert recorder.lifecycle.state == LifecycleState.INACTIVE
        assert RunMeta.load(run.meta_file).active is False
        assert not run.pid_file("main").exists()
        assert not workspace.socket_path.exists()


class TestRecorderStop:
    """Test the ordered teardown."""

    @pytest.mark.asyncio
    async def test_stop(self, recorder, factory, workspace):
        await recorder.start()
        run = recorder.run_paths

        report = await recorder.stop()

        assert report.ok
        names = [o.name for o in report.outcomes]
        assert names.index("stop control server") < names.index("drain event pipeline")
        assert names.index("drain event pipeline") < names.index("close browser")
        assert names[-1] == "mark run inactive"
        factory.browser.save_storage_state.assert_called_with(workspace.storage_state_path)
        factory.browser.close.assert_called_once()
        assert not workspace.socket_path.exists()
        assert RunMeta.load(run.meta_file).active is False

    @pytest.mark.asyncio
    async def test_stop_before_start(self, settings, workspace, factory):
        report = await Recorder(settings, workspace=workspace, browser_factory=factory).stop()
        assert report.skipped

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, recorder):
        await recorder.start()
        await recorder.stop()
        second = await recorder.stop()
        assert second.ok

    @pytest.mark.asyncio
    async def test_run_until_stop_requested(self, settings, workspace, factory):
        recorder = Recorder(settings, workspace=workspace, browser_factory=factory)
        started = asyncio.Event()

        task = asyncio.create_task(recorder.run(on_started=lambda meta: started.set()))
        await asyncio.wait_for(started.wait(), 5)
        recorder.request_stop()
        report = await asyncio.wait_for(task, 10)

        assert report.ok
        assert recorder.lifecycle.state == LifecycleState.INACTIVE

    @pytest.mark.asyncio
    async def test_restart_starts_new_run(self, recorder, settings, workspace, factory):
        first = await recorder.start()
        await recorder.stop()
        await asyncio.sleep(0.002)

        second_recorder = Recorder(settings, workspace=workspace, browser_factory=FakeBrowserFactory())
        try:
            second = await second_recorder.start(restart=True)
            assert second.run_id != first.run_id
            assert workspace.current_run().run_id == second.run_id
        finally:
            await second_recorder.stop()
