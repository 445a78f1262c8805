"""
Control channel wire format.

Messages are single-line JSON objects terminated by ``\\n``:

    request:  {"id": "k3j9x", "type": "action", "tool": "browser_click", "args": {...}}
              {"id": "p1", "type": "ping"}
    response: {"id": "k3j9x", "ok": true, "result": {...}}
              {"id": "k3j9x", "ok": false, "error": "...", "code": "action_failed"}

A response always echoes its request's ``id``. When a line cannot be parsed
at all the reply carries the sentinel id ``"unknown"``.
"""

import json
import uuid
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from rce_engine.exceptions import ProtocolError, RCEError

SENTINEL_ID = "unknown"

# Snapshots and evaluate results can be large
MAX_LINE_BYTES = 64 * 1024 * 1024


class ControlRequest(BaseModel):
    """A command sent by a client."""

    id: str
    type: Literal["action", "ping"] = "action"
    tool: Optional[str] = None
    args: Dict[str, Any] = Field(default_factory=dict)


class ControlResponse(BaseModel):
    """The single reply to a request."""

    id: str
    ok: bool
    result: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def success(cls, request_id: str, result: Any = None) -> "ControlResponse":
        return cls(id=request_id, ok=True, result=result)

    @classmethod
    def failure(cls, request_id: str, error: Union[str, BaseException], code: Optional[str] = None) -> "ControlResponse":
        """Build an error reply; RCE errors contribute their own code tag."""
        if isinstance(error, RCEError):
            return cls(id=request_id, ok=False, error=error.message, code=code or error.code)
        return cls(id=request_id, ok=False, error=str(error), code=code)


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


def encode_message(message: BaseModel) -> bytes:
    """Serialize a request or response to one wire line."""
    return message.model_dump_json(exclude_none=True).encode("utf-8") + b"\n"


def _load(line: Union[bytes, str]) -> Dict[str, Any]:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed message: {e}", {"preview": text[:100]})
    if not isinstance(data, dict):
        raise ProtocolError("Message is not a JSON object", {"preview": text[:100]})
    return data


def decode_request(line: Union[bytes, str]) -> ControlRequest:
    """
    Parse one request line.

    Raises:
        ProtocolError: If the line is not a valid request
    """
    data = _load(line)
    try:
        return ControlRequest.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid request: {e.errors()[0].get('msg', e)}", {"id": data.get("id")})


def decode_response(line: Union[bytes, str]) -> ControlResponse:
    """
    Parse one response line.

    Raises:
        ProtocolError: If the line is not a valid response
    """
    data = _load(line)
    try:
        return ControlResponse.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid response: {e.errors()[0].get('msg', e)}", {"id": data.get("id")})
