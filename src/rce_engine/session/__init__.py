"""
Session module - run layout, process control and the run lifecycle.
"""

from rce_engine.session.run import (
    RUN_SUBDIRS,
    CurrentRunPointer,
    RunMeta,
    RunPaths,
    Workspace,
    latest_screenshot_name,
    new_run_id,
)
from rce_engine.session.processes import (
    PID_NAMES,
    endpoint_released,
    pid_alive,
    port_released,
    read_pid_file,
    remove_pid_file,
    terminate_pid,
    write_pid_file,
)
from rce_engine.session.teardown import (
    StepOutcome,
    TeardownReport,
    TeardownStep,
    run_teardown,
)
from rce_engine.session.lifecycle import LifecycleState, SessionLifecycleManager

__all__ = [
    "RUN_SUBDIRS",
    "CurrentRunPointer",
    "RunMeta",
    "RunPaths",
    "Workspace",
    "latest_screenshot_name",
    "new_run_id",
    "PID_NAMES",
    "endpoint_released",
    "pid_alive",
    "port_released",
    "read_pid_file",
    "remove_pid_file",
    "terminate_pid",
    "write_pid_file",
    "StepOutcome",
    "TeardownReport",
    "TeardownStep",
    "run_teardown",
    "LifecycleState",
    "SessionLifecycleManager",
]
