"""
Playwright Browser - Implementation of IBrowserCapability using Playwright.

One browser, one context. rrweb is injected into every page on ``load`` and
its events come back through a context-wide ``__rrwebEmit`` binding, which
tells us which page (tab) emitted them. Console, network and page errors
are written to JSONL files in the run's logs directory.
"""

import asyncio
import contextlib
import functools
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from rce_engine.config.settings import BrowserSettings
from rce_engine.exceptions import (
    ActionFailedError,
    ActionTimeoutError,
    BrowserLaunchError,
)
from rce_engine.interfaces.browser import (
    BrowserType,
    EventSink,
    IBrowserCapability,
    TabInfo,
)
from rce_engine.timeline.models import PRIMARY_TAB_ID, now_ms
from rce_engine.utils.jsonl import append_json_line

logger = logging.getLogger(__name__)

CHROMIUM_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--disable-restore-session-state",
    "--disable-session-crashed-bubble",
    "--hide-crash-restore-bubble",
    "--test-type",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-backgrounding-occluded-windows",
]

STEALTH_INIT_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => false });
window.chrome = window.chrome || { runtime: {} };
"""

START_RECORDING_SCRIPT = """
(options) => {
    if (window.__rrwebStop) {
        window.__rrwebStop();
    }
    const record = window.rrweb.record;
    window.__rrwebStop = record({
        emit: (event) => window.__rrwebEmit(event),
        recordCanvas: options.recordCanvas,
        collectFonts: options.collectFonts,
        recordCrossOriginIframes: true,
        inlineStylesheet: true,
        sampling: options.sampling,
        checkoutEveryNms: options.checkoutEveryNms || undefined,
    });
    const takeFullSnapshot = record.takeFullSnapshot || window.rrweb.takeFullSnapshot;
    if (takeFullSnapshot) {
        setTimeout(() => {
            try { takeFullSnapshot(); } catch (e) { console.error('Failed to take full snapshot:', e); }
        }, 50);
    }
    return { url: window.location.href, hasContent: (document.body?.children.length || 0) > 0 };
}
"""

RRWEB_STATUS_SCRIPT = "() => typeof window.rrweb !== 'undefined' && typeof window.rrweb.record === 'function'"

@functools.lru_cache(maxsize=4)
def _read_bundle(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def rrweb_script_tag(settings: BrowserSettings) -> Dict[str, str]:
    """``add_script_tag`` arguments loading the rrweb bundle."""
    if settings.rrweb_script_path:
        return {"content": _read_bundle(settings.rrweb_script_path)}
    return {"url": settings.rrweb_script_url}


# Called as (tab_id, url) when a tab opens or its main frame navigates
TabListener = Callable[[int, str], Any]


def find_browser_pid(executable: Optional[str], parent_pid: Optional[int] = None) -> Optional[int]:
    """
    Best-effort lookup of the browser's OS pid.

    Playwright does not expose it, so ``/proc`` is scanned for a descendant
    of ``parent_pid`` whose executable is ``executable``.
    Returns None where ``/proc`` is unavailable.
    """
    proc = Path("/proc")
    if not executable or not proc.is_dir():
        return None
    root = parent_pid if parent_pid is not None else os.getpid()

    parents: Dict[int, int] = {}
    commands: Dict[int, str] = {}
    for entry in proc.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            stat = (entry / "stat").read_text()
            cmdline = (entry / "cmdline").read_bytes().split(b"\0", 1)[0].decode(errors="replace")
        except OSError:
            continue
        # Field 4 of stat is the ppid; the command name in field 2 may contain spaces
        fields = stat.rsplit(")", 1)[-1].split()
        if len(fields) < 2:
            continue
        pid = int(entry.name)
        parents[pid] = int(fields[1])
        commands[pid] = cmdline

    def descends(pid: int) -> bool:
        seen = set()
        while pid in parents and pid not in seen:
            seen.add(pid)
            pid = parents[pid]
            if pid == root:
                return True
        return False

    matches = sorted(pid for pid, cmd in commands.items() if cmd == executable and descends(pid))
    return matches[0] if matches else None


class PlaywrightBrowser(IBrowserCapability):
    """
    Playwright implementation of IBrowserCapability.

    Example:
        >>> browser = PlaywrightBrowser(settings.browser, logs_dir=paths.logs_dir)
        >>> await browser.launch(event_sink=pipeline.submit, storage_state=workspace.storage_state_path)
        >>> await browser.navigate("http://localhost:3000")
        >>> await browser.close()
    """

    def __init__(
        self,
        settings: Optional[BrowserSettings] = None,
        logs_dir: Optional[Union[str, Path]] = None,
        started_at: Optional[int] = None,
        on_tab: Optional[TabListener] = None,
    ):
        """
        Args:
            settings: Browser settings (defaults if None)
            logs_dir: Directory for console/network/js error logs (None disables them)
            started_at: Run start (epoch ms) used for the ``dt`` field of log lines
            on_tab: Called with (tab_id, url) on tab open and main-frame navigation
        """
        self._settings = settings or BrowserSettings()
        self._logs_dir = Path(logs_dir) if logs_dir else None
        self._started_at = started_at if started_at is not None else now_ms()
        self._on_tab = on_tab

        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._executable: Optional[str] = None
        self._pid: Optional[int] = None

        self._event_sink: Optional[EventSink] = None
        self._storage_state_path: Optional[Path] = None
        self._pages: Dict[int, Any] = {}
        self._closed_tabs: set = set()
        self._next_tab_id = PRIMARY_TAB_ID
        self._active_tab = PRIMARY_TAB_ID

    # Lifecycle

    @property
    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    @property
    def pid(self) -> Optional[int]:
        if self._pid is None and self._browser is not None:
            self._pid = find_browser_pid(self._executable)
        return self._pid

    @property
    def context(self) -> Any:
        return self._context

    async def launch(
        self,
        event_sink: Optional[EventSink] = None,
        storage_state: Optional[Union[str, Path]] = None,
    ) -> None:
        """
        Launch the browser and open the primary tab (tab 0).

        Raises:
            BrowserLaunchError: If Playwright or the browser fails to start
        """
        self._event_sink = event_sink
        self._storage_state_path = Path(storage_state) if storage_state else None

        try:
            from playwright.async_api import async_playwright

            self._playwright = await async_playwright().start()

            browser_type = BrowserType(self._settings.browser_type)
            launchers = {
                BrowserType.CHROMIUM: self._playwright.chromium,
                BrowserType.FIREFOX: self._playwright.firefox,
                BrowserType.WEBKIT: self._playwright.webkit,
            }
            launcher = launchers[browser_type]
            self._executable = launcher.executable_path

            self._browser = await launcher.launch(
                headless=self._settings.headless,
                args=CHROMIUM_ARGS if browser_type == BrowserType.CHROMIUM else None,
            )

            context_options: Dict[str, Any] = {"viewport": self._settings.viewport}
            if self._storage_state_path is not None and self._storage_state_path.is_file():
                context_options["storage_state"] = str(self._storage_state_path)
                logger.info("Loaded storage state (cookies, localStorage preserved)")
            else:
                logger.info("No storage state found, starting with clean session")

            self._context = await self._browser.new_context(**context_options)
            self._context.set_default_timeout(self._settings.timeout_ms)
            await self._context.add_init_script(STEALTH_INIT_SCRIPT)
            await self._context.expose_binding("__rrwebEmit", self._on_emit)

            primary = await self._context.new_page()
            self._setup_page(primary)
            self._context.on("page", self._on_new_page)

        except PlaywrightError as e:
            await self._shutdown_quietly()
            raise BrowserLaunchError(f"Failed to launch browser: {e}")

        logger.info(f"Launched {self._settings.browser_type} browser (headless={self._settings.headless})")

    async def close(self) -> None:
        if self._context is not None:
            try:
                await self._context.close()
            except PlaywrightError as e:
                logger.debug(f"Context close: {e}")
            self._context = None
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"Browser close: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser closed")

    async def _shutdown_quietly(self) -> None:
        try:
            await self.close()
        except PlaywrightError as e:
            logger.debug(f"Cleanup after failed launch: {e}")

    @property
    def active_tab_id(self) -> int:
        return self._active_tab

    def tabs(self) -> List[TabInfo]:
        return [
            TabInfo(tab_id=tab_id, url=page.url, closed=tab_id in self._closed_tabs)
            for tab_id, page in sorted(self._pages.items())
        ]

    async def save_storage_state(self, path: Optional[Union[str, Path]] = None) -> bool:
        target = Path(path) if path else self._storage_state_path
        if target is None or self._context is None or not self.is_connected:
            return False
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._context.storage_state(path=str(target))
        except PlaywrightError as e:
            logger.warning(f"Failed to save storage state: {e}")
            return False
        return True

    # Tabs and capture

    def _setup_page(self, page: Any) -> int:
        tab_id = self._next_tab_id
        self._next_tab_id += 1
        self._pages[tab_id] = page

        page.on("console", lambda msg: self._log_console(tab_id, msg))
        page.on("request", lambda req: self._log_request(tab_id, req))
        page.on("response", lambda res: self._log_response(tab_id, res))
        page.on("pageerror", lambda error: self._log_page_error(tab_id, error))
        page.on("load", lambda p: self._start_recording(p))
        page.on("framenavigated", lambda frame: self._on_frame_navigated(tab_id, page, frame))
        page.on("close", lambda p: self._on_page_closed(tab_id))

        self._notify_tab(tab_id, page.url)
        logger.info(f"Tab {tab_id} opened ({page.url})")
        return tab_id

    def _on_new_page(self, page: Any) -> None:
        if any(known is page for known in self._pages.values()):
            return
        tab_id = self._setup_page(page)
        self._active_tab = tab_id

    def _on_page_closed(self, tab_id: int) -> None:
        if tab_id in self._closed_tabs:
            return
        self._closed_tabs.add(tab_id)
        if self._active_tab == tab_id:
            open_tabs = [t for t in self._pages if t not in self._closed_tabs]
            self._active_tab = open_tabs[-1] if open_tabs else PRIMARY_TAB_ID
        logger.info(f"Tab {tab_id} closed")

    def _tab_id_of(self, page: Any) -> int:
        for tab_id, known in self._pages.items():
            if known is page:
                return tab_id
        return self._setup_page(page)

    def _notify_tab(self, tab_id: int, url: str) -> None:
        if self._on_tab is not None:
            self._on_tab(tab_id, url)

    async def _on_emit(self, source: Dict[str, Any], event: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        tab_id = self._tab_id_of(source["page"])
        await self._event_sink(tab_id, event)

    async def _on_frame_navigated(self, tab_id: int, page: Any, frame: Any) -> None:
        if frame != page.main_frame or frame.url == "about:blank":
            return
        self._notify_tab(tab_id, frame.url)
        if self._settings.persist_storage_state and await self.save_storage_state():
            logger.debug("Storage state saved after navigation")

    async def _start_recording(self, page: Any) -> None:
        url = page.url
        if url == "about:blank":
            return
        try:
            await page.wait_for_load_state("domcontentloaded")
            await page.add_script_tag(**rrweb_script_tag(self._settings))
            await asyncio.sleep(0.2)
            if not await page.evaluate(RRWEB_STATUS_SCRIPT):
                logger.warning(f"[rrweb] rrweb.record not available on {url}; not recording")
                return
            started = await page.evaluate(
                START_RECORDING_SCRIPT,
                {
                    "recordCanvas": self._settings.record_canvas,
                    "collectFonts": self._settings.collect_fonts,
                    "sampling": {
                        "mousemove": self._settings.sampling_mousemove,
                        "input": self._settings.sampling_input,
                    },
                    "checkoutEveryNms": self._settings.checkout_every_ms,
                },
            )
            logger.info(f"[rrweb] Recording started on {started['url']} (hasContent: {started['hasContent']})")
        except PlaywrightError as e:
            if "Execution context was destroyed" in str(e) or "closed" in str(e):
                logger.debug(f"[rrweb] Page went away during injection: {e}")
            else:
                logger.warning(f"[rrweb] Failed to inject rrweb on {url}: {e}")
        except OSError as e:
            logger.error(f"[rrweb] Cannot read rrweb bundle: {e}")

    def _write_log(self, name: str, tab_id: int, data: Dict[str, Any]) -> None:
        if self._logs_dir is None:
            return
        t = now_ms()
        append_json_line(self._logs_dir / f"{name}.jsonl", {"t": t, "dt": t - self._started_at, **data, "tabId": tab_id})

    def _log_console(self, tab_id: int, msg: Any) -> None:
        entry = {"level": msg.type, "text": msg.text, "location": msg.location}
        self._write_log("console", tab_id, entry)
        if msg.type in ("error", "warning"):
            self._write_log("console_errors", tab_id, entry)

    def _log_request(self, tab_id: int, request: Any) -> None:
        self._write_log(
            "network",
            tab_id,
            {"phase": "request", "method": request.method, "url": request.url, "resourceType": request.resource_type},
        )

    def _log_response(self, tab_id: int, response: Any) -> None:
        entry = {"phase": "response", "status": response.status, "url": response.url, "statusText": response.status_text}
        self._write_log("network", tab_id, entry)
        if response.status >= 400:
            self._write_log("network_errors", tab_id, entry)

    def _log_page_error(self, tab_id: int, error: Any) -> None:
        self._write_log("js_errors", tab_id, {"message": error.message, "stack": error.stack})

    # Actions

    def _page(self, tab_id: Optional[int]) -> Any:
        target = self._active_tab if tab_id is None else tab_id
        page = self._pages.get(target)
        if page is None or target in self._closed_tabs:
            raise ActionFailedError(f"No open tab {target}", action_type="tab")
        return page

    @contextlib.asynccontextmanager
    async def _guard(self, action_type: str, selector: Optional[str] = None) -> AsyncIterator[None]:
        """Translate Playwright errors into action errors."""
        try:
            yield
        except PlaywrightTimeoutError as e:
            raise ActionTimeoutError(str(e).splitlines()[0], action_type=action_type)
        except PlaywrightError as e:
            raise ActionFailedError(str(e).splitlines()[0] if str(e) else action_type, action_type=action_type, selector=selector)

    async def navigate(self, url: str, wait_until: str = "domcontentloaded", tab_id: Optional[int] = None) -> Dict[str, Any]:
        page = self._page(tab_id)
        async with self._guard("navigate"):
            response = await page.goto(url, wait_until=wait_until)
            title = await page.title()
        return {"url": page.url, "title": title, "status": response.status if response else None}

    async def go_back(self, tab_id: Optional[int] = None) -> Dict[str, Any]:
        page = self._page(tab_id)
        async with self._guard("navigate_back"):
            await page.go_back(wait_until="domcontentloaded")
            title = await page.title()
        return {"url": page.url, "title": title}

    async def click(
        self,
        selector: str,
        button: str = "left",
        click_count: int = 1,
        timeout_ms: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> None:
        page = self._page(tab_id)
        async with self._guard("click", selector):
            await page.click(selector, button=button, click_count=click_count, timeout=timeout_ms)

    async def type(self, selector: str, text: str, delay_ms: Optional[int] = None, tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)
        async with self._guard("type", selector):
            await page.type(selector, text, delay=delay_ms)

    async def press_key(self, key: str, tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)
        async with self._guard("press_key"):
            await page.keyboard.press(key)

    async def hover(self, selector: str, timeout_ms: Optional[int] = None, tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)
        async with self._guard("hover", selector):
            await page.hover(selector, timeout=timeout_ms)

    async def select_option(
        self,
        selector: str,
        value: Optional[str] = None,
        label: Optional[str] = None,
        index: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> List[str]:
        page = self._page(tab_id)
        if value is not None:
            option: Dict[str, Any] = {"value": value}
        elif label is not None:
            option = {"label": label}
        elif index is not None:
            option = {"index": index}
        else:
            option = {}
        async with self._guard("select_option", selector):
            return await page.select_option(selector, **option)

    async def upload_files(self, selector: str, paths: List[str], tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)
        async with self._guard("file_upload", selector):
            await page.set_input_files(selector, paths)

    async def evaluate(
        self,
        expression: str,
        args: Optional[List[Any]] = None,
        is_function: bool = True,
        tab_id: Optional[int] = None,
    ) -> Any:
        """
        Evaluate JavaScript.

        A function expression receives ``args[0]`` when one argument is
        given, or the whole list when several are.
        """
        page = self._page(tab_id)
        async with self._guard("evaluate"):
            if is_function and args:
                return await page.evaluate(expression, args[0] if len(args) == 1 else args)
            return await page.evaluate(expression)

    async def wait_for(
        self,
        selector: Optional[str] = None,
        state: str = "visible",
        timeout_ms: Optional[int] = None,
        tab_id: Optional[int] = None,
    ) -> None:
        page = self._page(tab_id)
        async with self._guard("wait_for", selector):
            if selector:
                await page.wait_for_selector(selector, state=state, timeout=timeout_ms)
            else:
                await page.wait_for_timeout(timeout_ms if timeout_ms is not None else 1000)

    async def resize(self, width: int, height: int, tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)
        async with self._guard("resize"):
            await page.set_viewport_size({"width": width, "height": height})

    async def drag(
        self,
        from_selector: Optional[str] = None,
        to_selector: Optional[str] = None,
        from_point: Optional[Dict[str, float]] = None,
        to_point: Optional[Dict[str, float]] = None,
        steps: int = 10,
        tab_id: Optional[int] = None,
    ) -> None:
        page = self._page(tab_id)
        async with self._guard("drag", from_selector):
            if from_selector and to_selector:
                await page.drag_and_drop(from_selector, to_selector)
                return
            start = from_point or {"x": 0, "y": 0}
            end = to_point or {"x": 0, "y": 0}
            await page.mouse.move(start["x"], start["y"])
            await page.mouse.down()
            await page.mouse.move(end["x"], end["y"], steps=steps)
            await page.mouse.up()

    async def handle_dialog(self, accept: bool = True, prompt_text: Optional[str] = None, tab_id: Optional[int] = None) -> None:
        page = self._page(tab_id)

        async def on_dialog(dialog: Any) -> None:
            if accept and prompt_text is not None:
                await dialog.accept(prompt_text)
            elif accept:
                await dialog.accept()
            else:
                await dialog.dismiss()

        page.once("dialog", on_dialog)

    async def screenshot(self, path: Union[str, Path], full_page: bool = False, tab_id: Optional[int] = None) -> Path:
        page = self._page(tab_id)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        async with self._guard("screenshot"):
            await page.screenshot(path=str(target), full_page=full_page)
        return target

    async def snapshot_html(self, tab_id: Optional[int] = None) -> str:
        page = self._page(tab_id)
        async with self._guard("snapshot"):
            return await page.content()

    async def close_tab(self, tab_id: Optional[int] = None) -> None:
        target = self._active_tab if tab_id is None else tab_id
        page = self._page(target)
        async with self._guard("close"):
            await page.close()
        self._on_page_closed(target)
