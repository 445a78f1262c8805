"""
Base exceptions for RCE Engine.
"""


class RCEError(Exception):
    """
    Base exception for all RCE Engine errors.

    Every error carries a short ``code`` tag so that callers on the other
    side of the control channel (or a CLI) can tell failure kinds apart
    without parsing messages.

    Attributes:
        code: Stable error tag (e.g. 'not_found', 'timeout')
        message: Human-readable error message
        details: Optional additional error details
    """

    code: str = "error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - Details: {self.details}"
        return self.message


class ConfigurationError(RCEError):
    """
    Invalid settings.

    Raised for a missing or malformed config file, an unreadable env file,
    or values (file, env or command line) that fail validation.
    """

    code = "configuration_error"


class IOFailureError(RCEError):
    """
    Disk read or write failure.

    Raised by the event log and frame index when a write cannot be made
    durable, or a file cannot be read at all.
    """

    code = "io_failure"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, {"path": path})
        self.path = path
