"""
Control module - Unix socket channel between the CLI and the recorder.
"""

from rce_engine.control.protocol import (
    SENTINEL_ID,
    ControlRequest,
    ControlResponse,
    decode_request,
    decode_response,
    encode_message,
    new_request_id,
)
from rce_engine.control.server import ConnectionState, ControlServer, MessageHandler
from rce_engine.control.client import ControlClient, error_from_response

__all__ = [
    "SENTINEL_ID",
    "ControlRequest",
    "ControlResponse",
    "decode_request",
    "decode_response",
    "encode_message",
    "new_request_id",
    "ConnectionState",
    "ControlServer",
    "MessageHandler",
    "ControlClient",
    "error_from_response",
]
