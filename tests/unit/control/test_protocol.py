"""
Tests for the control channel wire format.
"""

import json

import pytest

from rce_engine.control import (
    ControlRequest,
    ControlResponse,
    decode_request,
    decode_response,
    encode_message,
    error_from_response,
    new_request_id,
)
from rce_engine.exceptions import (
    FrameNotFoundError,
    NotRunningError,
    ProtocolError,
    RCEError,
)


class TestEncoding:
    """Test message serialization."""

    def test_request_is_one_line(self):
        data = encode_message(ControlRequest(id="a1", tool="browser_click", args={"selector": "#go"}))
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1
        assert json.loads(data) == {
            "id": "a1",
            "type": "action",
            "tool": "browser_click",
            "args": {"selector": "#go"},
        }

    def test_response_omits_empty_fields(self):
        data = encode_message(ControlResponse.success("a1", {"ok": True}))
        assert json.loads(data) == {"id": "a1", "ok": True, "result": {"ok": True}}

    def test_failure_from_rce_error(self):
        response = ControlResponse.failure("a1", FrameNotFoundError("No frames", locator="+0"))
        assert response.ok is False
        assert response.error == "No frames"
        assert response.code == "not_found"

    def test_failure_from_plain_error(self):
        response = ControlResponse.failure("a1", ValueError("bad"), code="error")
        assert (response.error, response.code) == ("bad", "error")

    def test_request_ids_unique(self):
        assert len({new_request_id() for _ in range(100)}) == 100


class TestDecoding:
    """Test message parsing."""

    def test_decode_request(self):
        request = decode_request(b'{"id":"p","type":"ping"}\n')
        assert request.type == "ping"
        assert request.args == {}

    @pytest.mark.parametrize("line", [b"not json", b"[1,2]", b'{"type":"ping"}', b'{"id":"x","type":"nope"}'])
    def test_decode_request_invalid(self, line):
        with pytest.raises(ProtocolError):
            decode_request(line)

    def test_decode_response(self):
        response = decode_response('{"id":"a","ok":false,"error":"gone","code":"not_running"}')
        assert response.code == "not_running"

    def test_decode_response_invalid(self):
        with pytest.raises(ProtocolError):
            decode_response(b'{"ok":true}')


class TestErrorFromResponse:
    """Test rebuilding typed errors on the client."""

    def test_known_code(self):
        error = error_from_response(ControlResponse(id="a", ok=False, error="down", code="not_running"))
        assert isinstance(error, NotRunningError)
        assert error.message == "down"
        assert error.code == "not_running"

    def test_unknown_code(self):
        error = error_from_response(ControlResponse(id="a", ok=False, error="odd", code="martian"))
        assert type(error) is RCEError
        assert str(error) == "odd"
