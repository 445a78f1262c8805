"""
Tests for the Playwright browser adapter.
"""

import json
import shutil
import subprocess
from pathlib import Path

import pytest
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from rce_engine.browsers import PlaywrightBrowser, find_browser_pid, rrweb_script_tag
from rce_engine.config import BrowserSettings
from rce_engine.exceptions import ActionFailedError, ActionTimeoutError


def _mock_page(url="http://localhost:3000/"):
    """Create a mock Playwright page."""
    page = MagicMock()
    page.url = url
    page.click = AsyncMock()
    page.goto = AsyncMock(return_value=MagicMock(status=200))
    page.title = AsyncMock(return_value="Home")
    page.select_option = AsyncMock(return_value=["b"])
    page.evaluate = AsyncMock(return_value=42)
    page.content = AsyncMock(return_value="<html></html>")
    page.close = AsyncMock()
    page.screenshot = AsyncMock()
    return page


@pytest.fixture
def tab_events():
    return []


@pytest.fixture
def browser(tmp_path, tab_events):
    """A PlaywrightBrowser with a mocked primary tab (no real launch)."""
    browser = PlaywrightBrowser(
        BrowserSettings(),
        logs_dir=tmp_path / "logs",
        started_at=0,
        on_tab=lambda tab_id, url: tab_events.append((tab_id, url)),
    )
    browser._setup_page(_mock_page())
    return browser


def _read_log(tmp_path, name):
    return [json.loads(line) for line in (tmp_path / "logs" / f"{name}.jsonl").read_text().splitlines()]


class TestRrwebScriptTag:
    """Test where the rrweb bundle comes from."""

    def test_cdn_by_default(self):
        tag = rrweb_script_tag(BrowserSettings())
        assert tag == {"url": BrowserSettings().rrweb_script_url}

    def test_local_bundle(self, tmp_path):
        bundle = tmp_path / "rrweb.min.js"
        bundle.write_text("var rrweb = {};")
        tag = rrweb_script_tag(BrowserSettings(rrweb_script_path=str(bundle)))
        assert tag == {"content": "var rrweb = {};"}


class TestFindBrowserPid:
    """Test the /proc scan."""

    @pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs /proc")
    def test_finds_child(self):
        executable = shutil.which("sleep")
        proc = subprocess.Popen([executable, "30"])
        try:
            assert find_browser_pid(executable) == proc.pid
        finally:
            proc.kill()
            proc.wait()

    def test_no_executable(self):
        assert find_browser_pid(None) is None


class TestTabs:
    """Test tab tracking."""

    def test_primary_tab(self, browser, tab_events):
        assert [(t.tab_id, t.url, t.closed) for t in browser.tabs()] == [(0, "http://localhost:3000/", False)]
        assert tab_events == [(0, "http://localhost:3000/")]

    def test_popup_becomes_active(self, browser):
        popup = _mock_page("http://localhost:3000/popup")
        assert browser.active_tab_id == 0
        browser._on_new_page(popup)
        browser._on_new_page(popup)
        assert [t.tab_id for t in browser.tabs()] == [0, 1]
        assert browser._page(None) is popup
        assert browser.active_tab_id == 1

    @pytest.mark.asyncio
    async def test_emit_is_attributed_to_tab(self, browser):
        sink = AsyncMock()
        browser._event_sink = sink
        popup = _mock_page("http://localhost:3000/popup")
        browser._on_new_page(popup)

        await browser._on_emit({"page": popup}, {"type": 2, "timestamp": 1})
        await browser._on_emit({"page": browser._pages[0]}, {"type": 3, "timestamp": 2})

        assert [c.args[0] for c in sink.call_args_list] == [1, 0]

    @pytest.mark.asyncio
    async def test_emit_from_unknown_page_registers_it(self, browser):
        sink = AsyncMock()
        browser._event_sink = sink
        await browser._on_emit({"page": _mock_page("http://other/")}, {"type": 2, "timestamp": 1})
        assert sink.call_args.args[0] == 1
        assert len(browser.tabs()) == 2

    @pytest.mark.asyncio
    async def test_close_tab(self, browser):
        popup = _mock_page("http://localhost:3000/popup")
        browser._on_new_page(popup)

        await browser.close_tab()

        popup.close.assert_called_once()
        assert browser.tabs()[1].closed
        assert browser._page(None) is browser._pages[0]
        with pytest.raises(ActionFailedError):
            browser._page(1)

    def test_close_event_is_idempotent(self, browser):
        browser._on_page_closed(0)
        browser._on_page_closed(0)
        with pytest.raises(ActionFailedError) as exc_info:
            browser._page(None)
        assert "No open tab 0" in exc_info.value.message


class TestActions:
    """Test action methods against a mocked page."""

    @pytest.mark.asyncio
    async def test_navigate(self, browser):
        result = await browser.navigate("http://localhost:3000/")
        assert result == {"url": "http://localhost:3000/", "title": "Home", "status": 200}

    @pytest.mark.asyncio
    async def test_click(self, browser):
        await browser.click("#go", click_count=2)
        browser._pages[0].click.assert_called_once_with("#go", button="left", click_count=2, timeout=None)

    @pytest.mark.asyncio
    async def test_timeout_translated(self, browser):
        browser._pages[0].click.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded.\nCall log: ...")
        with pytest.raises(ActionTimeoutError) as exc_info:
            await browser.click("#slow")
        assert exc_info.value.message == "Timeout 30000ms exceeded."

    @pytest.mark.asyncio
    async def test_error_translated(self, browser):
        browser._pages[0].click.side_effect = PlaywrightError("Element is detached")
        with pytest.raises(ActionFailedError) as exc_info:
            await browser.click("#gone")
        assert exc_info.value.selector == "#gone"

    @pytest.mark.asyncio
    async def test_select_by_label(self, browser):
        assert await browser.select_option("#s", label="B") == ["b"]
        browser._pages[0].select_option.assert_called_once_with("#s", label="B")

    @pytest.mark.asyncio
    async def test_evaluate_single_arg(self, browser):
        await browser.evaluate("(x) => x * 2", args=[21])
        browser._pages[0].evaluate.assert_called_once_with("(x) => x * 2", 21)

    @pytest.mark.asyncio
    async def test_evaluate_expression(self, browser):
        await browser.evaluate("document.title", is_function=False)
        browser._pages[0].evaluate.assert_called_once_with("document.title")

    @pytest.mark.asyncio
    async def test_screenshot_creates_dir(self, browser, tmp_path):
        target = tmp_path / "shots" / "a.png"
        assert await browser.screenshot(target) == target
        assert target.parent.is_dir()

    @pytest.mark.asyncio
    async def test_handle_dialog_arms_once(self, browser):
        await browser.handle_dialog(accept=True, prompt_text="yes")
        event, handler = browser._pages[0].once.call_args.args
        assert event == "dialog"

        dialog = MagicMock()
        dialog.accept = AsyncMock()
        await handler(dialog)
        dialog.accept.assert_called_once_with("yes")

    @pytest.mark.asyncio
    async def test_save_storage_state_without_context(self, browser, tmp_path):
        assert await browser.save_storage_state(tmp_path / "state.json") is False


class TestCaptureLogs:
    """Test the console/network/js error logs."""

    def test_console(self, browser, tmp_path):
        msg = MagicMock(type="error", text="boom", location={"url": "app.js"})
        browser._log_console(0, msg)
        browser._log_console(0, MagicMock(type="log", text="hi", location={}))

        assert [e["text"] for e in _read_log(tmp_path, "console")] == ["boom", "hi"]
        errors = _read_log(tmp_path, "console_errors")
        assert len(errors) == 1
        assert errors[0]["tabId"] == 0
        assert errors[0]["dt"] == errors[0]["t"]

    def test_network_errors(self, browser, tmp_path):
        browser._log_response(0, MagicMock(status=404, url="http://x/missing", status_text="Not Found"))
        browser._log_response(0, MagicMock(status=200, url="http://x/", status_text="OK"))

        assert len(_read_log(tmp_path, "network")) == 2
        assert [e["status"] for e in _read_log(tmp_path, "network_errors")] == [404]

    def test_page_error(self, browser, tmp_path):
        browser._log_page_error(0, MagicMock(message="TypeError: x is undefined", stack="at app.js:1"))
        assert _read_log(tmp_path, "js_errors")[0]["message"] == "TypeError: x is undefined"

    def test_no_logs_dir(self):
        browser = PlaywrightBrowser(BrowserSettings())
        browser._log_page_error(0, MagicMock(message="x", stack=""))
