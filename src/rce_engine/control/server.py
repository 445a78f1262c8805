"""
Control Server - Unix socket endpoint of the running recorder.

Each connection may carry many requests. Every command runs as its own
task, so a slow command never holds up a quick one behind it;
responses are written whenever their handler finishes, one write at a time
per connection. Pings and malformed lines are answered inline by the read
loop. The server never times out a command.
"""

import asyncio
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set, Union

from rce_engine.exceptions import ProtocolError, RCEError
from rce_engine.control.protocol import (
    MAX_LINE_BYTES,
    SENTINEL_ID,
    ControlRequest,
    ControlResponse,
    decode_request,
    encode_message,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ControlRequest], Awaitable[ControlResponse]]

NO_HANDLER_MESSAGE = "No message handler registered"


class ConnectionState(str, Enum):
    IDLE = "idle"
    AWAITING_FULL_MESSAGE = "awaiting_full_message"
    DISPATCHING = "dispatching"
    CLOSED = "closed"


class _Connection:
    """Per-connection bookkeeping."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.state = ConnectionState.IDLE
        self.write_lock = asyncio.Lock()
        self.tasks: Set[asyncio.Task] = set()

    async def send(self, response: ControlResponse) -> None:
        if self.state == ConnectionState.CLOSED or self.writer.is_closing():
            logger.debug(f"[ipc] Connection closed, dropping response (id: {response.id})")
            return
        async with self.write_lock:
            try:
                self.writer.write(encode_message(response))
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                logger.debug(f"[ipc] Failed to write response (id: {response.id}): {e}")


class ControlServer:
    """
    Newline-delimited JSON server on a Unix domain socket.

    Example:
        >>> server = ControlServer(".rce/control.sock", handler=dispatcher.handle_request)
        >>> await server.start()
        >>> ...
        >>> await server.stop()
    """

    def __init__(self, socket_path: Union[str, Path], handler: Optional[MessageHandler] = None):
        self._socket_path = Path(socket_path)
        self._handler = handler
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[_Connection] = set()

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def on_message(self, handler: Optional[MessageHandler]) -> None:
        """Register (or clear) the request handler."""
        self._handler = handler

    async def start(self) -> None:
        """
        Bind the socket and start accepting connections.

        A leftover socket file from a dead recorder is removed first.
        """
        if self._server is not None:
            await self.stop()

        self._socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self._socket_path.exists() or self._socket_path.is_symlink():
            logger.info(f"[ipc] Removing stale socket {self._socket_path}")
            self._socket_path.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self._socket_path),
            limit=MAX_LINE_BYTES,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info(f"[ipc] Control server listening on {self._socket_path}")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = _Connection(reader, writer)
        self._connections.add(conn)
        logger.debug("[ipc] Client connected")
        try:
            while True:
                conn.state = ConnectionState.AWAITING_FULL_MESSAGE
                try:
                    line = await reader.readline()
                except ValueError:
                    # Line longer than the stream limit; the reader has discarded it
                    await conn.send(ControlResponse.failure(
                        SENTINEL_ID, ProtocolError(f"Message exceeds {MAX_LINE_BYTES} bytes")
                    ))
                    continue
                except (ConnectionError, OSError) as e:
                    logger.debug(f"[ipc] Connection error: {e}")
                    break

                if not line:
                    break
                if not line.endswith(b"\n"):
                    logger.debug(f"[ipc] Discarding incomplete trailing message ({len(line)} bytes)")
                    break
                if not line.strip():
                    conn.state = ConnectionState.IDLE
                    continue

                conn.state = ConnectionState.DISPATCHING
                await self._dispatch_line(conn, line)
                conn.state = ConnectionState.IDLE
        finally:
            conn.state = ConnectionState.CLOSED
            self._connections.discard(conn)
            writer.close()
            logger.debug("[ipc] Client disconnected")

    async def _dispatch_line(self, conn: _Connection, line: bytes) -> None:
        """Reply to pings and malformed lines directly; run anything else as a task."""
        try:
            request = decode_request(line)
        except ProtocolError as e:
            logger.warning(f"[ipc] Rejected message: {e.message}")
            request_id = e.details.get("id")
            if not isinstance(request_id, str):
                request_id = SENTINEL_ID
            await conn.send(ControlResponse.failure(request_id, e))
            return

        logger.debug(f"[ipc] Received message: {request.type} (id: {request.id})")
        if request.type == "ping":
            await conn.send(ControlResponse.success(request.id, "pong"))
            return

        self._spawn(conn, self._run_handler(conn, request))

    def _spawn(self, conn: _Connection, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        conn.tasks.add(task)
        task.add_done_callback(conn.tasks.discard)

    async def _run_handler(self, conn: _Connection, request: ControlRequest) -> None:
        handler = self._handler
        if handler is None:
            response = ControlResponse.failure(request.id, NO_HANDLER_MESSAGE, code="unhandled")
        else:
            try:
                response = await handler(request)
            except RCEError as e:
                response = ControlResponse.failure(request.id, e)
            except Exception as e:
                logger.exception(f"[ipc] Handler raised for {request.tool!r} (id: {request.id})")
                response = ControlResponse.failure(request.id, e, code="error")

        if response.id != request.id:
            logger.warning(f"[ipc] Handler answered id {response.id!r} for request {request.id!r}")
            response = response.model_copy(update={"id": request.id})

        logger.debug(f"[ipc] Handler returned: ok={response.ok} (id: {response.id})")
        await conn.send(response)

    async def stop(self) -> None:
        """Stop accepting, close client connections and remove the socket file."""
        server, self._server = self._server, None
        if server is not None:
            server.close()

        for conn in list(self._connections):
            conn.state = ConnectionState.CLOSED
            for task in list(conn.tasks):
                task.cancel()
            conn.writer.close()
        self._connections.clear()

        if server is not None:
            await server.wait_closed()

        try:
            self._socket_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[ipc] Could not remove socket on stop: {e}")
        logger.info("[ipc] Control server stopped")
