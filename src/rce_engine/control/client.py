"""
Control Client - talks to a running recorder over its Unix socket.

Requests are correlated by id, so several may be in flight on one
connection and their replies may arrive in any order. Each request waits
for its own reply with its own timeout; a reply that shows up after its
request timed out is ignored.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from rce_engine.exceptions import (
    ConnectionClosedError,
    ControlTimeoutError,
    IOFailureError,
    NotRunningError,
    ProtocolError,
    RCEError,
    exception_for_code,
)
from rce_engine.control.protocol import (
    MAX_LINE_BYTES,
    ControlRequest,
    ControlResponse,
    decode_response,
    encode_message,
    new_request_id,
)
from rce_engine.utils.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_S = 35.0
DEFAULT_PING_TIMEOUT_S = 5.0


def error_from_response(response: ControlResponse) -> RCEError:
    """Rebuild the typed exception carried by a failed response."""
    return exception_for_code(response.code, response.error or "Unknown error")


class ControlClient:
    """
    Client side of the control channel.

    Example:
        >>> async with ControlClient(".rce/control.sock") as client:
        ...     response = await client.send_action("browser_click", {"selector": "#go"})
    """

    def __init__(
        self,
        socket_path: Union[str, Path],
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        ping_timeout_s: float = DEFAULT_PING_TIMEOUT_S,
    ):
        self._socket_path = Path(socket_path)
        self._request_timeout_s = request_timeout_s
        self._ping_timeout_s = ping_timeout_s
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_connected(self) -> bool:
        return (
            self._writer is not None
            and not self._writer.is_closing()
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self, retries: int = 0) -> None:
        """
        Connect to the recorder.

        Args:
            retries: Extra attempts (with backoff) while the recorder is not
                up yet, e.g. right after a restart

        Raises:
            NotRunningError: If no recorder is listening
            IOFailureError: For any other socket error
        """
        config = RetryConfig(
            max_attempts=retries + 1,
            initial_delay_ms=250,
            max_delay_ms=2000,
            retry_on=(NotRunningError,),
        )
        await retry_async(self._connect_once, config)

    async def _connect_once(self) -> None:
        path = str(self._socket_path)
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(path, limit=MAX_LINE_BYTES)
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise NotRunningError(
                f"Recorder not running (no control socket at {path})", socket_path=path
            ) from e
        except OSError as e:
            raise IOFailureError(f"Failed to connect to control socket: {e}", path=path) from e

        self._reader_task = asyncio.create_task(self._read_loop(self._reader), name="rce-control-client")
        logger.debug(f"[ipc-client] Connected to {path}")

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning("[ipc-client] Dropped oversized response")
                    continue
                if not line:
                    break
                if not line.strip():
                    continue
                try:
                    response = decode_response(line)
                except ProtocolError as e:
                    logger.warning(f"[ipc-client] Failed to parse response: {e}")
                    continue

                future = self._pending.pop(response.id, None)
                if future is None:
                    logger.debug(f"[ipc-client] No pending request for id: {response.id}")
                    continue
                if not future.done():
                    future.set_result(response)
        except (ConnectionError, OSError) as e:
            logger.debug(f"[ipc-client] Connection error: {e}")
        finally:
            self._fail_pending("Connection closed")

    def _fail_pending(self, message: str) -> None:
        pending, self._pending = self._pending, {}
        for request_id, future in pending.items():
            if not future.done():
                future.set_exception(ConnectionClosedError(message, {"request_id": request_id}))

    async def request(self, message: ControlRequest, timeout_s: Optional[float] = None) -> ControlResponse:
        """
        Send a request and wait for its correlated response.

        Raises:
            ControlTimeoutError: If no reply arrives within ``timeout_s``
            ConnectionClosedError: If the connection drops first
            ProtocolError: If a request with the same id is still in flight
        """
        if not self.is_connected or self._writer is None:
            raise ConnectionClosedError("Not connected", {"socket_path": str(self._socket_path)})

        if message.id in self._pending:
            raise ProtocolError(f"Request id {message.id!r} is already in flight", {"request_id": message.id})

        timeout = self._request_timeout_s if timeout_s is None else timeout_s
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[message.id] = future

        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            self._pending.pop(message.id, None)
            raise ConnectionClosedError(f"Connection closed: {e}", {"request_id": message.id}) from e

        logger.debug(f"[ipc-client] Sent {message.type} {message.tool or ''} (id: {message.id})")
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._pending.pop(message.id, None)
            raise ControlTimeoutError(
                f"Request {message.tool or message.type} timed out after {timeout:g}s",
                request_id=message.id,
                timeout_s=timeout,
            )

    async def send_action(
        self,
        tool: str,
        args: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> ControlResponse:
        """Send an action and return the raw response (ok or not)."""
        message = ControlRequest(id=new_request_id(), type="action", tool=tool, args=args or {})
        return await self.request(message, timeout_s)

    async def call(
        self,
        tool: str,
        args: Optional[Dict[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        """Send an action and return its result, raising the typed error on failure."""
        response = await self.send_action(tool, args, timeout_s)
        if not response.ok:
            raise error_from_response(response)
        return response.result

    async def ping(self, timeout_s: Optional[float] = None) -> bool:
        """True if the recorder answered the ping."""
        message = ControlRequest(id=new_request_id(), type="ping")
        timeout = self._ping_timeout_s if timeout_s is None else timeout_s
        response = await self.request(message, timeout)
        return response.ok

    async def reconnect(self, retries: int = 0) -> None:
        await self.close()
        await self.connect(retries=retries)

    async def close(self) -> None:
        """Close the connection; pending requests fail with ConnectionClosedError."""
        writer, self._writer = self._writer, None
        task, self._reader_task = self._reader_task, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"[ipc-client] Error while closing: {e}")
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fail_pending("Connection closed")

    async def __aenter__(self) -> "ControlClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
