"""
Tests for custom exceptions.
"""

import pytest

from rce_engine.exceptions import (
    ActionFailedError,
    ActionTimeoutError,
    AlreadyInProgressError,
    BrowserError,
    BrowserLaunchError,
    ConnectionClosedError,
    ControlTimeoutError,
    FrameNotFoundError,
    InvalidLocatorError,
    IOFailureError,
    NoActiveSessionError,
    NotRunningError,
    ProtocolError,
    RCEError,
    UnknownCommandError,
    exception_for_code,
)


class TestRCEError:
    """Test the base RCEError exception."""

    def test_create_base_error(self):
        error = RCEError("Something went wrong")
        assert str(error) == "Something went wrong"
        assert error.code == "error"

    def test_details_in_str(self):
        error = RCEError("Bad", {"path": "/x"})
        assert str(error) == "Bad - Details: {'path': '/x'}"

    def test_base_error_is_exception(self):
        assert issubclass(RCEError, Exception)


class TestSubclasses:
    """Test the specific errors."""

    def test_action_failed(self):
        error = ActionFailedError("Element not found", action_type="click", selector="#submit")
        assert isinstance(error, BrowserError)
        assert error.code == "action_failed"
        assert error.selector == "#submit"
        assert error.message == "Element not found"

    def test_action_timeout(self):
        error = ActionTimeoutError("Timed out", action_type="wait_for", timeout_ms=500)
        assert error.code == "timeout"
        assert error.timeout_ms == 500

    def test_control_timeout_shares_tag(self):
        error = ControlTimeoutError("Timed out", request_id="r1", timeout_s=1.0)
        assert error.code == ActionTimeoutError.code

    def test_unknown_command(self):
        error = UnknownCommandError("browser_fly")
        assert isinstance(error, ProtocolError)
        assert "browser_fly" in error.message

    def test_already_in_progress(self):
        error = AlreadyInProgressError("start", "starting")
        assert error.state == "starting"

    def test_io_failure(self):
        assert IOFailureError("disk full", path="/x").code == "io_failure"


class TestExceptionForCode:
    """Test rebuilding errors from wire tags."""

    @pytest.mark.parametrize(
        "code, cls",
        [
            ("not_found", FrameNotFoundError),
            ("invalid_locator", InvalidLocatorError),
            ("not_running", NotRunningError),
            ("timeout", ActionTimeoutError),
            ("action_failed", ActionFailedError),
            ("unknown_command", UnknownCommandError),
            ("connection_closed", ConnectionClosedError),
            ("no_session", NoActiveSessionError),
            ("browser_launch_failed", BrowserLaunchError),
        ],
    )
    def test_known(self, code, cls):
        error = exception_for_code(code, "message")
        assert type(error) is cls
        assert error.message == "message"
        assert error.code == code

    def test_unknown_falls_back(self):
        error = exception_for_code("weird", "message")
        assert type(error) is RCEError

    def test_none(self):
        assert type(exception_for_code(None, "message")) is RCEError
