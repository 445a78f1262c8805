"""
Command Dispatcher - executes control-channel commands against the browser.

Every command goes through ``execute``: arguments are validated against the
tool's model, the handler runs, the outcome is timed, logged with an
``[action-timing]`` line and appended to ``actions/actions.jsonl``.
"""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from rce_engine.actions.commands import (
    ERROR_CODE_ACTION_FAILED,
    ERROR_CODE_TIMEOUT,
    NAVIGATION_TOOLS,
    NO_REFRESH_TOOLS,
    ActionArgs,
    ActionResult,
    ClickArgs,
    DragArgs,
    EvaluateArgs,
    FileUploadArgs,
    HandleDialogArgs,
    HoverArgs,
    NavigateArgs,
    PressKeyArgs,
    ResizeArgs,
    ScreenshotArgs,
    SelectOptionArgs,
    TimelineResolveArgs,
    Tool,
    TypeArgs,
    WaitForArgs,
    parse_command,
)
from rce_engine.control.protocol import ControlRequest, ControlResponse
from rce_engine.exceptions import ActionTimeoutError, ControlTimeoutError, RCEError
from rce_engine.interfaces.browser import IBrowserCapability
from rce_engine.session.run import latest_screenshot_name
from rce_engine.timeline.models import PRIMARY_TAB_ID
from rce_engine.timeline.resolver import IndexLocator, TimestampLocator, TimeTravelResolver, parse_locator
from rce_engine.utils.jsonl import append_json_line

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]

NAVIGATION_SETTLE_MS = 200


class CommandDispatcher:
    """
    Maps each Tool to one handler.

    Example:
        >>> dispatcher = CommandDispatcher(browser, actions_log=paths.actions_file)
        >>> result = await dispatcher.execute("browser_click", {"selector": "#go"})
        >>> result.ok
        True
    """

    def __init__(
        self,
        browser: IBrowserCapability,
        actions_log: Optional[Union[str, Path]] = None,
        screenshots_dir: Optional[Union[str, Path]] = None,
        resolver_factory: Optional[Callable[[], TimeTravelResolver]] = None,
        started_at: Optional[int] = None,
        settle_ms: int = NAVIGATION_SETTLE_MS,
        latest_screenshots: bool = False,
    ):
        """
        Args:
            browser: Browser the commands run against
            actions_log: JSONL file receiving every ActionResult
            screenshots_dir: Default directory for screenshots without a path
            resolver_factory: Returns a resolver over the live timeline
                (enables ``timeline_resolve``)
            started_at: Run start (epoch ms) for the ``dt`` field
            settle_ms: Delay after navigation commands
            latest_screenshots: Refresh ``latest.tab-N.png`` (and ``latest.png``
                for the primary tab) in ``screenshots_dir`` after every command
                that may change the page
        """
        self._browser = browser
        self._actions_log = Path(actions_log) if actions_log else None
        self._screenshots_dir = Path(screenshots_dir) if screenshots_dir else Path.cwd()
        self._resolver_factory = resolver_factory
        self._started_at = started_at if started_at is not None else int(time.time() * 1000)
        self._settle_ms = settle_ms
        self._latest_screenshots = latest_screenshots
        self._latest_lock = asyncio.Lock()

        self._handlers: Dict[Tool, Handler] = {
            Tool.NAVIGATE: self._navigate,
            Tool.NAVIGATE_BACK: self._navigate_back,
            Tool.CLICK: self._click,
            Tool.TYPE: self._type,
            Tool.PRESS_KEY: self._press_key,
            Tool.HOVER: self._hover,
            Tool.SELECT_OPTION: self._select_option,
            Tool.FILE_UPLOAD: self._file_upload,
            Tool.EVALUATE: self._evaluate,
            Tool.WAIT_FOR: self._wait_for,
            Tool.RESIZE: self._resize,
            Tool.TAKE_SCREENSHOT: self._take_screenshot,
            Tool.SNAPSHOT: self._snapshot,
            Tool.HANDLE_DIALOG: self._handle_dialog,
            Tool.CLOSE: self._close,
            Tool.DRAG: self._drag,
            Tool.TIMELINE_RESOLVE: self._timeline_resolve,
        }

    @property
    def tools(self) -> list:
        return [tool.value for tool in self._handlers]

    async def execute(self, tool: Optional[str], args: Optional[Dict[str, Any]] = None) -> ActionResult:
        """
        Run one command.

        Returns:
            ActionResult (``ok=False`` for failures inside the command)

        Raises:
            UnknownCommandError: For a tool outside the command set
            ProtocolError: For invalid arguments
        """
        raw_args = dict(args or {})
        parsed_tool, parsed_args = parse_command(tool, raw_args)
        result = ActionResult.started(parsed_tool.value, raw_args, self._started_at)

        start = time.perf_counter()
        try:
            result.result = await self._handlers[parsed_tool](parsed_args)
            if parsed_tool in NAVIGATION_TOOLS and self._settle_ms:
                await asyncio.sleep(self._settle_ms / 1000)
            result.ok = True
        except (ActionTimeoutError, ControlTimeoutError) as e:
            result.error = {"message": e.message, "code": ERROR_CODE_TIMEOUT}
        except RCEError as e:
            result.error = {"message": e.message, "code": ERROR_CODE_ACTION_FAILED}
            result.error_tag = e.code
        except Exception as e:
            logger.exception(f"Unexpected error in {parsed_tool.value}")
            result.error = {"message": str(e) or type(e).__name__, "code": ERROR_CODE_ACTION_FAILED}
        result.duration_ms = int((time.perf_counter() - start) * 1000)

        if result.ok:
            logger.info(f"[action-timing] {result.tool} executed in {result.duration_ms}ms")
        else:
            logger.warning(
                f"[action-timing] {result.tool} failed after {result.duration_ms}ms: {result.error_message}"
            )

        if result.ok and self._latest_screenshots and parsed_tool not in NO_REFRESH_TOOLS:
            await self.refresh_latest(parsed_args.tab_id)

        if self._actions_log is not None:
            append_json_line(self._actions_log, result.to_dict())
        return result

    async def refresh_latest(self, tab_id: Optional[int] = None) -> Optional[Path]:
        """
        Capture a tab into ``latest.tab-N.png``; the primary tab is also
        copied to ``latest.png``.

        A failed capture is logged and leaves the previous files in place.

        Returns:
            The tab's file, or None if nothing was written
        """
        target = self._browser.active_tab_id if tab_id is None else tab_id
        path = self._screenshots_dir / latest_screenshot_name(target)
        async with self._latest_lock:
            try:
                await self._browser.screenshot(path, tab_id=target)
                if target == PRIMARY_TAB_ID:
                    shutil.copyfile(path, self._screenshots_dir / latest_screenshot_name())
            except (RCEError, OSError) as e:
                logger.warning(f"Latest screenshot of tab {target} not updated: {e}")
                return None
        logger.debug(f"Latest screenshot of tab {target} saved to {path}")
        return path

    async def handle_request(self, request: ControlRequest) -> ControlResponse:
        """Control-server handler: run an action request and build its reply."""
        if request.type != "action" or not request.tool:
            return ControlResponse.failure(request.id, "Invalid message format", code="protocol_error")
        result = await self.execute(request.tool, request.args)
        if result.ok:
            return ControlResponse.success(request.id, result.result)
        return ControlResponse.failure(request.id, result.error_message or "Unknown error", code=result.wire_code)

    # Handlers

    async def _navigate(self, args: NavigateArgs) -> Dict[str, Any]:
        return await self._browser.navigate(args.url, wait_until=args.wait_until, tab_id=args.tab_id)

    async def _navigate_back(self, args: ActionArgs) -> Dict[str, Any]:
        return await self._browser.go_back(tab_id=args.tab_id)

    async def _click(self, args: ClickArgs) -> Dict[str, Any]:
        await self._browser.click(
            args.selector,
            button=args.button,
            click_count=args.click_count,
            timeout_ms=args.timeout_ms,
            tab_id=args.tab_id,
        )
        return {"selector": args.selector}

    async def _type(self, args: TypeArgs) -> Dict[str, Any]:
        await self._browser.type(args.selector, args.text, delay_ms=args.delay_ms, tab_id=args.tab_id)
        return {"selector": args.selector, "chars": len(args.text)}

    async def _press_key(self, args: PressKeyArgs) -> Dict[str, Any]:
        await self._browser.press_key(args.key, tab_id=args.tab_id)
        return {"key": args.key}

    async def _hover(self, args: HoverArgs) -> Dict[str, Any]:
        await self._browser.hover(args.selector, timeout_ms=args.timeout_ms, tab_id=args.tab_id)
        return {"selector": args.selector}

    async def _select_option(self, args: SelectOptionArgs) -> Dict[str, Any]:
        selected = await self._browser.select_option(
            args.selector, value=args.value, label=args.label, index=args.index, tab_id=args.tab_id
        )
        return {"selector": args.selector, "selected": selected}

    async def _file_upload(self, args: FileUploadArgs) -> Dict[str, Any]:
        await self._browser.upload_files(args.selector, args.file_paths, tab_id=args.tab_id)
        return {"selector": args.selector, "count": len(args.file_paths)}

    async def _evaluate(self, args: EvaluateArgs) -> Dict[str, Any]:
        value = await self._browser.evaluate(
            args.expression, args=args.args, is_function=args.is_function, tab_id=args.tab_id
        )
        return {"value": value}

    async def _wait_for(self, args: WaitForArgs) -> Dict[str, Any]:
        if args.selector:
            await self._browser.wait_for(args.selector, state=args.state, timeout_ms=args.timeout_ms, tab_id=args.tab_id)
            return {"selector": args.selector, "state": args.state}
        waited = args.timeout_ms if args.timeout_ms is not None else 1000
        await self._browser.wait_for(None, timeout_ms=waited, tab_id=args.tab_id)
        return {"waited": waited}

    async def _resize(self, args: ResizeArgs) -> Dict[str, Any]:
        await self._browser.resize(args.width, args.height, tab_id=args.tab_id)
        return {"width": args.width, "height": args.height}

    async def _take_screenshot(self, args: ScreenshotArgs) -> Dict[str, Any]:
        path = Path(args.path) if args.path else self._screenshots_dir / f"screenshot-{int(time.time() * 1000)}.png"
        written = await self._browser.screenshot(path, full_page=args.full_page, tab_id=args.tab_id)
        return {"path": str(written), "fullPage": args.full_page}

    async def _snapshot(self, args: ActionArgs) -> Dict[str, Any]:
        html = await self._browser.snapshot_html(tab_id=args.tab_id)
        return {"html": html, "bytes": len(html)}

    async def _handle_dialog(self, args: HandleDialogArgs) -> Dict[str, Any]:
        await self._browser.handle_dialog(
            accept=args.action == "accept", prompt_text=args.prompt_text, tab_id=args.tab_id
        )
        return {"action": args.action, "ready": True}

    async def _close(self, args: ActionArgs) -> Dict[str, Any]:
        await self._browser.close_tab(tab_id=args.tab_id)
        return {"closed": True}

    async def _drag(self, args: DragArgs) -> Dict[str, Any]:
        source, target = args.from_, args.to
        if source.selector and target.selector:
            await self._browser.drag(from_selector=source.selector, to_selector=target.selector, tab_id=args.tab_id)
            return {"from": source.selector, "to": target.selector}

        from_point = {"x": source.x or 0, "y": source.y or 0}
        to_point = {"x": target.x or 0, "y": target.y or 0}
        await self._browser.drag(from_point=from_point, to_point=to_point, steps=args.steps, tab_id=args.tab_id)
        return {"from": from_point, "to": to_point}

    async def _timeline_resolve(self, args: TimelineResolveArgs) -> Dict[str, Any]:
        if self._resolver_factory is None:
            raise RCEError("Timeline lookups are not available in this recorder")
        if args.index is not None:
            locator = IndexLocator(args.index)
        elif args.ts is not None:
            locator = TimestampLocator(args.ts)
        else:
            locator = parse_locator(args.at or "")
        resolution = self._resolver_factory().resolve(locator, tab_id=args.tab)
        return resolution.to_dict()
