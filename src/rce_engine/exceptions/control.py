"""
Control channel exceptions.
"""

from rce_engine.exceptions.base import RCEError


class ControlError(RCEError):
    """Base exception for control channel errors."""

    code = "control_error"


class NotRunningError(ControlError):
    """
    The recorder's control endpoint is absent or refused the connection.

    Kept distinct from IOFailureError: the remedy is to start a recorder,
    not to retry the read.
    """

    code = "not_running"

    def __init__(self, message: str, socket_path: str | None = None):
        super().__init__(message, {"socket_path": socket_path})
        self.socket_path = socket_path


class ProtocolError(ControlError):
    """
    Malformed wire message.

    Raised when a request or response line is not valid JSON, does not match
    the message schema, or carries invalid command arguments.
    """

    code = "protocol_error"


class UnknownCommandError(ProtocolError):
    """The requested tool is not part of the command set."""

    code = "unknown_command"

    def __init__(self, tool: str):
        super().__init__(f"Unknown action: {tool}", {"tool": tool})
        self.tool = tool


class ControlTimeoutError(ControlError):
    """
    No correlated response arrived in time.

    The server keeps running the command; only the waiting client gives up.
    """

    code = "timeout"

    def __init__(self, message: str, request_id: str, timeout_s: float):
        super().__init__(message, {"request_id": request_id, "timeout_s": timeout_s})
        self.request_id = request_id
        self.timeout_s = timeout_s


class ConnectionClosedError(ControlError):
    """The connection closed while a request was still pending."""

    code = "connection_closed"
