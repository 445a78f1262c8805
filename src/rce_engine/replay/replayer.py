"""
Playwright Replayer - rebuilds a recorded page with the rrweb Replayer.

The events are replayed inside a blank page of a headless Chromium. A page
flag (``window._ready``) signals that the last event has been applied; the
wait for it is bounded.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from rce_engine.browsers.playwright_browser import rrweb_script_tag
from rce_engine.config.settings import BrowserSettings
from rce_engine.exceptions import ActionFailedError, ActionTimeoutError, BrowserLaunchError
from rce_engine.interfaces.replay import IReplayer, Viewport

logger = logging.getLogger(__name__)

READY_TIMEOUT_MS = 30000

REPLAY_PAGE = """<!doctype html>
<meta charset="utf-8"/>
<style>html,body,#root{margin:0;height:100%;overflow:hidden}</style>
<div id="root"></div>
"""

# Fast-forward to the end; the fallback timer covers streams that never emit 'finish'
PLAY_TO_END_SCRIPT = """
(events) => {
    const root = document.getElementById('root');
    const replayer = new rrweb.Replayer(events, {
        root, speed: 9999, mouseTail: false, showWarning: false,
        UNSAFE_replayCanvas: true, skipInactive: true,
    });
    let fired = false;
    const markReady = () => {
        if (!fired) {
            fired = true;
            setTimeout(() => { window._ready = 1; }, 300);
        }
    };
    replayer.on('finish', markReady);
    replayer.play();
    setTimeout(markReady, 2000);
}
"""

# Jump to the final event's offset and freeze there
SEEK_TO_END_SCRIPT = """
(events) => {
    const root = document.getElementById('root');
    const replayer = new rrweb.Replayer(events, {
        root, speed: 1, mouseTail: false, showWarning: false, UNSAFE_replayCanvas: true,
    });
    const end = events[events.length - 1].timestamp - events[0].timestamp;
    replayer.pause(end);
    requestAnimationFrame(() => requestAnimationFrame(() => { window._ready = 1; }));
}
"""

REPLAYED_HTML_SCRIPT = """
() => {
    const iframe = document.querySelector('#root iframe');
    const doc = iframe && iframe.contentDocument;
    if (doc && doc.documentElement) {
        return '<!doctype html>\\n' + doc.documentElement.outerHTML;
    }
    const root = document.getElementById('root');
    return root ? root.innerHTML : '';
}
"""


class PlaywrightReplayer(IReplayer):
    """
    Replays rrweb events in a headless Chromium.

    The browser is launched on first use and reused until ``close()``;
    every render gets a fresh context sized to the recorded viewport.

    Example:
        >>> async with PlaywrightReplayer(settings.browser) as replayer:
        ...     await replayer.render_screenshot(events, "shot.png", {"width": 1280, "height": 800})
    """

    def __init__(self, settings: Optional[BrowserSettings] = None, ready_timeout_ms: int = READY_TIMEOUT_MS):
        self._settings = settings or BrowserSettings()
        self._ready_timeout_ms = ready_timeout_ms
        self._playwright: Any = None
        self._browser: Any = None

    async def _ensure_browser(self) -> Any:
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        try:
            from playwright.async_api import async_playwright

            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True)
        except PlaywrightError as e:
            raise BrowserLaunchError(f"Failed to launch replay browser: {e}")
        return self._browser

    async def _open(self, events: List[Dict[str, Any]], viewport: Optional[Viewport], script: str) -> Any:
        if not events:
            raise ActionFailedError("No events to replay", action_type="replay")
        browser = await self._ensure_browser()
        context = await browser.new_context(viewport=viewport or self._settings.viewport)
        page = await context.new_page()
        try:
            await page.set_content(REPLAY_PAGE, wait_until="load")
            await page.add_script_tag(**rrweb_script_tag(self._settings))
            logger.info(f"[replay] Replaying {len(events)} events")
            await page.evaluate(script, events)
        except PlaywrightError as e:
            await context.close()
            raise ActionFailedError(f"Replay failed: {e}", action_type="replay")
        return page

    async def render_screenshot(
        self,
        events: List[Dict[str, Any]],
        out_path: Union[str, Path],
        viewport: Optional[Viewport] = None,
    ) -> Path:
        page = await self._open(events, viewport, PLAY_TO_END_SCRIPT)
        target = Path(out_path)
        try:
            try:
                await page.wait_for_function("() => window._ready === 1", timeout=self._ready_timeout_ms)
            except PlaywrightTimeoutError:
                logger.warning("[replay] Timeout waiting for replay ready signal; capturing anyway")
            await page.wait_for_timeout(200)
            target.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(target), full_page=True)
        except PlaywrightError as e:
            raise ActionFailedError(f"Replay screenshot failed: {e}", action_type="replay")
        finally:
            await page.context.close()
        logger.info(f"[replay] Screenshot saved to {target}")
        return target

    async def render_html(
        self,
        events: List[Dict[str, Any]],
        viewport: Optional[Viewport] = None,
    ) -> str:
        page = await self._open(events, viewport, SEEK_TO_END_SCRIPT)
        try:
            await page.wait_for_function("() => window._ready === 1", timeout=self._ready_timeout_ms)
            return await page.evaluate(REPLAYED_HTML_SCRIPT)
        except PlaywrightTimeoutError:
            raise ActionTimeoutError(
                f"Replay did not become ready within {self._ready_timeout_ms}ms",
                action_type="replay",
                timeout_ms=self._ready_timeout_ms,
            )
        except PlaywrightError as e:
            raise ActionFailedError(f"Replay HTML extraction failed: {e}", action_type="replay")
        finally:
            await page.context.close()

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"Replay browser close: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
