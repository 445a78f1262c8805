"""
Session lifecycle exceptions.
"""

from rce_engine.exceptions.base import RCEError


class LifecycleError(RCEError):
    """Base exception for session lifecycle errors."""

    code = "lifecycle_error"


class AlreadyInProgressError(LifecycleError):
    """
    A lifecycle operation was re-entered while already running.

    Attributes:
        operation: The operation that was re-entered ('start', 'stop', ...)
        state: Lifecycle state at the time of the call
    """

    code = "already_in_progress"

    def __init__(self, operation: str, state: str):
        super().__init__(
            f"Cannot {operation}: lifecycle is {state}",
            {"operation": operation, "state": state},
        )
        self.operation = operation
        self.state = state


class NoActiveSessionError(LifecycleError):
    """No run is pointed to by the workspace's current pointer."""

    code = "no_session"
