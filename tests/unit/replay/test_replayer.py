"""
Tests for the Playwright replayer (browser mocked).
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from rce_engine.config import BrowserSettings
from rce_engine.exceptions import ActionFailedError, ActionTimeoutError
from rce_engine.replay import PlaywrightReplayer
from rce_engine.replay.replayer import PLAY_TO_END_SCRIPT, SEEK_TO_END_SCRIPT

EVENTS = [{"type": 4, "timestamp": 1000, "data": {}}, {"type": 2, "timestamp": 1000, "data": {}}]


@pytest.fixture
def page():
    page = MagicMock()
    page.set_content = AsyncMock()
    page.add_script_tag = AsyncMock()
    page.evaluate = AsyncMock(return_value="<!doctype html>\n<html></html>")
    page.wait_for_function = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.screenshot = AsyncMock()
    page.context.close = AsyncMock()
    return page


@pytest.fixture
def replayer(page):
    """A replayer whose browser is already 'running'."""
    replayer = PlaywrightReplayer(BrowserSettings(), ready_timeout_ms=50)
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    browser = MagicMock()
    browser.is_connected.return_value = True
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()
    replayer._browser = browser
    return replayer


class TestPlaywrightReplayer:
    """Test rendering against a mocked page."""

    @pytest.mark.asyncio
    async def test_no_events(self):
        with pytest.raises(ActionFailedError):
            await PlaywrightReplayer().render_html([])

    @pytest.mark.asyncio
    async def test_html(self, replayer, page):
        html = await replayer.render_html(EVENTS, {"width": 800, "height": 600})

        assert html == "<!doctype html>\n<html></html>"
        replayer._browser.new_context.assert_called_once_with(viewport={"width": 800, "height": 600})
        page.add_script_tag.assert_called_once_with(url=BrowserSettings().rrweb_script_url)
        assert page.evaluate.call_args_list[0].args == (SEEK_TO_END_SCRIPT, EVENTS)
        page.context.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_html_timeout(self, replayer, page):
        page.wait_for_function.side_effect = PlaywrightTimeoutError("Timeout 50ms exceeded.")
        with pytest.raises(ActionTimeoutError):
            await replayer.render_html(EVENTS)
        page.context.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_screenshot(self, replayer, page, tmp_path):
        out = tmp_path / "shots" / "frame.png"
        path = await replayer.render_screenshot(EVENTS, out)

        assert path == out
        assert out.parent.is_dir()
        assert page.evaluate.call_args_list[0].args == (PLAY_TO_END_SCRIPT, EVENTS)
        page.screenshot.assert_called_once_with(path=str(out), full_page=True)

    @pytest.mark.asyncio
    async def test_screenshot_proceeds_after_ready_timeout(self, replayer, page, tmp_path):
        page.wait_for_function.side_effect = PlaywrightTimeoutError("Timeout 50ms exceeded.")
        await replayer.render_screenshot(EVENTS, tmp_path / "frame.png")
        page.screenshot.assert_called_once()

    @pytest.mark.asyncio
    async def test_default_viewport(self, replayer):
        await replayer.render_html(EVENTS)
        replayer._browser.new_context.assert_called_once_with(viewport={"width": 1280, "height": 800})

    @pytest.mark.asyncio
    async def test_close(self, replayer):
        browser = replayer._browser
        await replayer.close()
        browser.close.assert_called_once()
        await replayer.close()
