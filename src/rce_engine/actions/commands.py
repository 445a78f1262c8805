"""
Command set - the closed list of tools the control channel accepts.

Each ``Tool`` has exactly one argument model. Argument names are camelCase
on the wire (``clickCount``, ``timeoutMs``) and snake_case in Python.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from rce_engine.exceptions import ProtocolError, UnknownCommandError


class Tool(str, Enum):
    """Tools accepted by the recorder."""
    NAVIGATE = "browser_navigate"
    NAVIGATE_BACK = "browser_navigate_back"
    CLICK = "browser_click"
    TYPE = "browser_type"
    PRESS_KEY = "browser_press_key"
    HOVER = "browser_hover"
    SELECT_OPTION = "browser_select_option"
    FILE_UPLOAD = "browser_file_upload"
    EVALUATE = "browser_evaluate"
    WAIT_FOR = "browser_wait_for"
    RESIZE = "browser_resize"
    TAKE_SCREENSHOT = "browser_take_screenshot"
    SNAPSHOT = "browser_snapshot"
    HANDLE_DIALOG = "browser_handle_dialog"
    CLOSE = "browser_close"
    DRAG = "browser_drag"
    TIMELINE_RESOLVE = "timeline_resolve"


# Tools followed by a short settle delay so late rendering lands in the log
NAVIGATION_TOOLS = frozenset({Tool.NAVIGATE, Tool.NAVIGATE_BACK})

# Tools after which the latest screenshot is left as it was
NO_REFRESH_TOOLS = frozenset({Tool.TAKE_SCREENSHOT, Tool.SNAPSHOT, Tool.TIMELINE_RESOLVE, Tool.CLOSE})


class ActionArgs(BaseModel):
    """Base for all argument models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    tab_id: Optional[int] = Field(default=None, ge=0)


class NavigateArgs(ActionArgs):
    url: str = Field(min_length=1)
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "domcontentloaded"


class NavigateBackArgs(ActionArgs):
    pass


class ClickArgs(ActionArgs):
    selector: str
    button: Literal["left", "right", "middle"] = "left"
    click_count: int = Field(default=1, ge=1)
    timeout_ms: Optional[int] = Field(default=None, ge=0)


class TypeArgs(ActionArgs):
    selector: str
    text: str
    delay_ms: Optional[int] = Field(default=None, ge=0)


class PressKeyArgs(ActionArgs):
    key: str = Field(min_length=1)


class HoverArgs(ActionArgs):
    selector: str
    timeout_ms: Optional[int] = Field(default=None, ge=0)


class SelectOptionArgs(ActionArgs):
    selector: str
    value: Optional[str] = None
    label: Optional[str] = None
    index: Optional[int] = Field(default=None, ge=0)


class FileUploadArgs(ActionArgs):
    selector: str
    file_paths: List[str]


class EvaluateArgs(ActionArgs):
    expression: str
    is_function: bool = True
    args: List[Any] = Field(default_factory=list)


class WaitForArgs(ActionArgs):
    selector: Optional[str] = None
    state: Literal["attached", "detached", "visible", "hidden"] = "visible"
    timeout_ms: Optional[int] = Field(default=None, ge=0)


class ResizeArgs(ActionArgs):
    width: int = Field(ge=1)
    height: int = Field(ge=1)


class ScreenshotArgs(ActionArgs):
    path: Optional[str] = None
    full_page: bool = False


class SnapshotArgs(ActionArgs):
    pass


class HandleDialogArgs(ActionArgs):
    action: Literal["accept", "dismiss"] = "accept"
    prompt_text: Optional[str] = None


class CloseArgs(ActionArgs):
    pass


class DragPoint(BaseModel):
    """One end of a drag: a selector or viewport coordinates."""

    model_config = ConfigDict(extra="forbid")

    selector: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


class DragArgs(ActionArgs):
    from_: DragPoint = Field(alias="from")
    to: DragPoint
    steps: int = Field(default=10, ge=1)


class TimelineResolveArgs(ActionArgs):
    """
    Time-travel lookup. Exactly one of ``at`` (locator text), ``index`` or
    ``ts`` (epoch ms).

    ``tab`` restricts the lookup to one tab.
    """

    at: Optional[str] = None
    index: Optional[int] = None
    ts: Optional[int] = None
    tab: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_locator(self) -> "TimelineResolveArgs":
        given = [name for name in ("at", "index", "ts") if getattr(self, name) is not None]
        if len(given) != 1:
            raise ValueError("exactly one of 'at', 'index' or 'ts' is required")
        return self


TOOL_ARGS: Dict[Tool, Type[ActionArgs]] = {
    Tool.NAVIGATE: NavigateArgs,
    Tool.NAVIGATE_BACK: NavigateBackArgs,
    Tool.CLICK: ClickArgs,
    Tool.TYPE: TypeArgs,
    Tool.PRESS_KEY: PressKeyArgs,
    Tool.HOVER: HoverArgs,
    Tool.SELECT_OPTION: SelectOptionArgs,
    Tool.FILE_UPLOAD: FileUploadArgs,
    Tool.EVALUATE: EvaluateArgs,
    Tool.WAIT_FOR: WaitForArgs,
    Tool.RESIZE: ResizeArgs,
    Tool.TAKE_SCREENSHOT: ScreenshotArgs,
    Tool.SNAPSHOT: SnapshotArgs,
    Tool.HANDLE_DIALOG: HandleDialogArgs,
    Tool.CLOSE: CloseArgs,
    Tool.DRAG: DragArgs,
    Tool.TIMELINE_RESOLVE: TimelineResolveArgs,
}


def parse_tool(name: Optional[str]) -> Tool:
    """
    Look up a tool by wire name.

    Raises:
        UnknownCommandError: If the name is not in the command set
    """
    try:
        return Tool(name)
    except ValueError:
        raise UnknownCommandError(str(name))


def parse_command(name: Optional[str], args: Optional[Dict[str, Any]] = None) -> Tuple[Tool, ActionArgs]:
    """
    Validate a tool name and its arguments.

    Raises:
        UnknownCommandError: For an unknown tool
        ProtocolError: For arguments that do not fit the tool's model
    """
    tool = parse_tool(name)
    try:
        parsed = TOOL_ARGS[tool].model_validate(args or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolError(f"Invalid arguments for {tool.value}: {problems}", {"tool": tool.value})
    return tool, parsed


ERROR_CODE_TIMEOUT = "E_TIMEOUT"
ERROR_CODE_ACTION_FAILED = "E_ACTION_FAILED"


@dataclass
class ActionResult:
    """
    Outcome of one executed command, as written to ``actions/actions.jsonl``.

    Attributes:
        ok: Whether the command succeeded
        t: Start time (epoch ms)
        dt: Start time relative to the run start (ms)
        tool: Wire name of the tool
        args: Arguments as received
        result: Tool-specific result (on success)
        error: ``{"message", "code"}`` with code E_TIMEOUT or E_ACTION_FAILED
        duration_ms: Wall time spent executing
        error_tag: Error class tag of the failure, kept off the log line
    """
    ok: bool
    t: int
    dt: int
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: Optional[Dict[str, str]] = None
    duration_ms: int = 0
    error_tag: Optional[str] = None

    @classmethod
    def started(cls, tool: str, args: Dict[str, Any], started_at: int) -> "ActionResult":
        t = int(time.time() * 1000)
        return cls(ok=False, t=t, dt=t - started_at, tool=tool, args=args)

    @property
    def error_message(self) -> Optional[str]:
        return self.error.get("message") if self.error else None

    @property
    def wire_code(self) -> Optional[str]:
        """Error tag used on the control channel."""
        if not self.error:
            return None
        if self.error_tag:
            return self.error_tag
        return "timeout" if self.error.get("code") == ERROR_CODE_TIMEOUT else "action_failed"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "ok": self.ok,
            "t": self.t,
            "dt": self.dt,
            "tool": self.tool,
            "args": self.args,
            "durationMs": self.duration_ms,
        }
        if self.ok:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data
