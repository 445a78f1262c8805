"""
Tests for the control channel server and client.
"""

import asyncio
import json
import socket

import pytest

from rce_engine.control import (
    SENTINEL_ID,
    ControlClient,
    ControlRequest,
    ControlResponse,
    ControlServer,
)
from rce_engine.exceptions import (
    ActionFailedError,
    ConnectionClosedError,
    ControlTimeoutError,
    IOFailureError,
    NotRunningError,
    ProtocolError,
)


async def _sleepy_handler(request: ControlRequest) -> ControlResponse:
    await asyncio.sleep(request.args.get("delay", 0))
    return ControlResponse.success(request.id, {"echo": request.args.get("value")})


@pytest.fixture
async def server(socket_path):
    server = ControlServer(socket_path, handler=_sleepy_handler)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def client(server):
    client = ControlClient(server.socket_path, request_timeout_s=2.0)
    await client.connect()
    yield client
    await client.close()


async def _raw_exchange(path, payload: bytes, replies: int = 1):
    reader, writer = await asyncio.open_unix_connection(str(path))
    writer.write(payload)
    await writer.drain()
    lines = [json.loads(await asyncio.wait_for(reader.readline(), 2.0)) for _ in range(replies)]
    writer.close()
    return lines


class TestControlServer:
    """Test the server side."""

    @pytest.mark.asyncio
    async def test_socket_created_and_removed(self, socket_path):
        server = ControlServer(socket_path)
        await server.start()
        assert socket_path.exists()
        assert server.is_serving
        await server.stop()
        assert not socket_path.exists()

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, socket_path):
        socket_path.write_text("stale")
        server = ControlServer(socket_path)
        await server.start()
        assert await _raw_exchange(socket_path, b'{"id":"p","type":"ping"}\n') == [
            {"id": "p", "ok": True, "result": "pong"}
        ]
        await server.stop()

    @pytest.mark.asyncio
    async def test_parse_error_uses_sentinel_and_keeps_connection(self, server):
        replies = await _raw_exchange(
            server.socket_path,
            b'this is not json\n{"id":"p1","type":"ping"}\n',
            replies=2,
        )
        assert replies[0]["id"] == SENTINEL_ID
        assert replies[0]["ok"] is False
        assert replies[0]["code"] == "protocol_error"
        assert replies[1] == {"id": "p1", "ok": True, "result": "pong"}

    @pytest.mark.asyncio
    async def test_invalid_request_echoes_id(self, server):
        replies = await _raw_exchange(server.socket_path, b'{"id":"x1","type":"bogus"}\n')
        assert replies[0]["id"] == "x1"
        assert replies[0]["code"] == "protocol_error"

    @pytest.mark.asyncio
    async def test_partial_message_buffered(self, server):
        reader, writer = await asyncio.open_unix_connection(str(server.socket_path))
        writer.write(b'{"id":"split","ty')
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.write(b'pe":"ping"}\n')
        await writer.drain()
        reply = json.loads(await asyncio.wait_for(reader.readline(), 2.0))
        assert reply["id"] == "split"
        writer.close()

    @pytest.mark.asyncio
    async def test_no_handler(self, socket_path):
        server = ControlServer(socket_path)
        await server.start()
        replies = await _raw_exchange(socket_path, b'{"id":"a","type":"action","tool":"browser_click"}\n')
        await server.stop()
        assert replies[0]["ok"] is False
        assert replies[0]["error"] == "No message handler registered"
        assert replies[0]["code"] == "unhandled"

    @pytest.mark.asyncio
    async def test_handler_error_is_tagged(self, socket_path):
        async def failing(request):
            raise ActionFailedError("element not found", action_type="click", selector="#missing")

        server = ControlServer(socket_path, handler=failing)
        await server.start()
        replies = await _raw_exchange(socket_path, b'{"id":"a","type":"action","tool":"browser_click"}\n')
        await server.stop()
        assert replies[0] == {"id": "a", "ok": False, "error": "element not found", "code": "action_failed"}

    @pytest.mark.asyncio
    async def test_slow_command_does_not_block_ping(self, server):
        replies = await _raw_exchange(
            server.socket_path,
            b'{"id":"slow","type":"action","tool":"t","args":{"delay":0.3}}\n{"id":"p","type":"ping"}\n',
            replies=2,
        )
        assert [r["id"] for r in replies] == ["p", "slow"]

    @pytest.mark.asyncio
    async def test_ping_answered_by_read_loop(self, server, monkeypatch):
        spawned = []
        spawn = server._spawn

        def tracked_spawn(conn, coro):
            spawned.append(coro)
            spawn(conn, coro)

        monkeypatch.setattr(server, "_spawn", tracked_spawn)
        replies = await _raw_exchange(
            server.socket_path,
            b'{"id":"p1","type":"ping"}\n{oops\n{"id":"p2","type":"ping"}\n',
            replies=3,
        )
        assert [r["id"] for r in replies] == ["p1", SENTINEL_ID, "p2"]
        assert replies[0]["result"] == "pong"
        assert spawned == []

        await _raw_exchange(server.socket_path, b'{"id":"a","type":"action","tool":"t"}\n')
        assert len(spawned) == 1


class TestControlClient:
    """Test the client side."""

    @pytest.mark.asyncio
    async def test_ping(self, client):
        assert await client.ping() is True

    @pytest.mark.asyncio
    async def test_send_action(self, client):
        response = await client.send_action("browser_click", {"value": 42})
        assert response.ok
        assert response.result == {"echo": 42}

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, client):
        """'b' finishes before 'a'; each caller still gets its own reply."""
        arrivals = []

        async def tracked(value, delay):
            response = await client.send_action("t", {"value": value, "delay": delay})
            arrivals.append(value)
            return response

        a, b = await asyncio.gather(tracked("a", 0.3), tracked("b", 0.01))
        assert a.result == {"echo": "a"}
        assert b.result == {"echo": "b"}
        assert arrivals == ["b", "a"]
        assert client.pending_count == 0

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_id_rejected(self, client):
        first = asyncio.create_task(
            client.request(ControlRequest(id="x", type="action", tool="t", args={"value": 1, "delay": 0.2}))
        )
        await asyncio.sleep(0.05)

        with pytest.raises(ProtocolError) as exc_info:
            await client.request(ControlRequest(id="x", type="action", tool="t", args={"value": 2}))
        assert exc_info.value.details == {"request_id": "x"}

        response = await first
        assert response.result == {"echo": 1}
        assert client.pending_count == 0

        # The id is free again once its reply is in
        again = await client.request(ControlRequest(id="x", type="action", tool="t", args={"value": 3}))
        assert again.result == {"echo": 3}

    @pytest.mark.asyncio
    async def test_timeout_then_late_reply(self, client):
        with pytest.raises(ControlTimeoutError) as exc_info:
            await client.send_action("t", {"delay": 0.3}, timeout_s=0.05)
        assert exc_info.value.code == "timeout"
        assert client.pending_count == 0

        # The late reply arrives and is ignored
        await asyncio.sleep(0.4)
        assert client.is_connected
        response = await client.send_action("t", {"value": "next"})
        assert response.result == {"echo": "next"}

    @pytest.mark.asyncio
    async def test_not_running_when_socket_missing(self, short_tmp):
        client = ControlClient(short_tmp / "missing.sock")
        with pytest.raises(NotRunningError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_not_running_when_refused(self, short_tmp):
        path = short_tmp / "dead.sock"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        sock.close()  # file remains, nobody listens

        with pytest.raises(NotRunningError):
            await ControlClient(path).connect()

    @pytest.mark.asyncio
    async def test_io_failure_is_distinct(self, short_tmp):
        blocker = short_tmp / "file"
        blocker.write_text("x")
        with pytest.raises(IOFailureError) as exc_info:
            await ControlClient(blocker / "control.sock").connect()
        assert not isinstance(exc_info.value, NotRunningError)

    @pytest.mark.asyncio
    async def test_connect_retries(self, socket_path):
        client = ControlClient(socket_path)
        server = ControlServer(socket_path, handler=_sleepy_handler)

        async def start_later():
            await asyncio.sleep(0.1)
            await server.start()

        starter = asyncio.create_task(start_later())
        await client.connect(retries=5)
        await starter
        assert await client.ping()
        await client.close()
        await server.stop()

    @pytest.mark.asyncio
    async def test_pending_fail_on_close(self, socket_path):
        server = ControlServer(socket_path, handler=_sleepy_handler)
        await server.start()
        client = ControlClient(socket_path)
        await client.connect()

        pending = asyncio.create_task(client.send_action("t", {"delay": 5}))
        await asyncio.sleep(0.05)
        await server.stop()

        with pytest.raises(ConnectionClosedError):
            await pending
        await client.close()

    @pytest.mark.asyncio
    async def test_call_raises_typed_error(self, socket_path):
        async def failing(request):
            raise ActionFailedError("boom", action_type="click")

        server = ControlServer(socket_path, handler=failing)
        await server.start()
        async with ControlClient(socket_path) as client:
            with pytest.raises(ActionFailedError, match="boom"):
                await client.call("browser_click", {"selector": "#x"})
        await server.stop()

    @pytest.mark.asyncio
    async def test_request_when_not_connected(self, short_tmp):
        client = ControlClient(short_tmp / "x.sock")
        with pytest.raises(ConnectionClosedError):
            await client.ping()

    @pytest.mark.asyncio
    async def test_reconnect(self, client, server):
        await client.reconnect()
        assert await client.ping()
