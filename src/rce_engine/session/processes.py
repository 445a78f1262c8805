"""
Process helpers - pid files, signalling and endpoint release checks.
"""

import asyncio
import errno
import logging
import os
import signal
import socket
from pathlib import Path
from typing import Optional, Union

from rce_engine.exceptions import IOFailureError

logger = logging.getLogger(__name__)

# Order in which a stop terminates a run's processes
PID_NAMES = ("main", "browser", "server")


def write_pid_file(path: Union[str, Path], pid: int) -> None:
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(str(pid), encoding="utf-8")
    except OSError as e:
        raise IOFailureError(f"Failed to write pid file: {e}", path=str(p))


def read_pid_file(path: Union[str, Path]) -> Optional[int]:
    """Pid stored in ``path``; None if missing or not a number."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    try:
        pid = int(text)
    except ValueError:
        logger.warning(f"Ignoring malformed pid file {p}: {text[:20]!r}")
        return None
    return pid if pid > 0 else None


def remove_pid_file(path: Union[str, Path]) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    return True


async def terminate_pid(pid: int, grace_ms: int = 100, poll_ms: int = 25) -> str:
    """
    SIGTERM a process, then SIGKILL it if it outlives the grace period.

    The calling process is never signalled.

    Returns:
        'self', 'not_running', 'terminated' or 'killed'

    Raises:
        PermissionError: If the process cannot be signalled
    """
    if pid == os.getpid():
        logger.debug(f"Not signalling own pid {pid}")
        return "self"

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return "not_running"

    waited = 0
    while waited < grace_ms:
        await asyncio.sleep(min(poll_ms, grace_ms - waited) / 1000)
        waited += poll_ms
        if not pid_alive(pid):
            logger.debug(f"Process {pid} exited after SIGTERM")
            return "terminated"

    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return "terminated"
    logger.info(f"Process {pid} killed after {grace_ms}ms grace")
    return "killed"


def endpoint_released(socket_path: Union[str, Path]) -> bool:
    """True if nothing accepts connections on the Unix socket."""
    path = str(socket_path)
    if not os.path.exists(path):
        return True
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(0.5)
    try:
        sock.connect(path)
    except (FileNotFoundError, ConnectionRefusedError):
        return True
    except OSError as e:
        logger.debug(f"Connect check of {path} failed: {e}")
        return True
    finally:
        sock.close()
    return False


def port_released(port: int, host: str = "127.0.0.1") -> bool:
    """True if the TCP port can be bound."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            return False
        logger.debug(f"Bind check of port {port} failed: {e}")
        return True
    finally:
        sock.close()
    return True
