"""
Transport tests
Channel behaviour, HTTP endpoints, and end-to-end scenarios against a running server.
"""

import asyncio
import contextlib
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import websockets
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve
from websockets.protocol import State

from pairline import config, protocol, server

TIMEOUT = 2.0


# ==================== Helpers ====================

@contextlib.asynccontextmanager
async def running_server():
    server.reset_state()
    async with serve(server.connection_handler, "127.0.0.1", 0,
                     process_request=server.process_request) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        yield port


def ws_url(port):
    return f"ws://127.0.0.1:{port}{config.WS_PATH}"


async def receive(ws):
    return json.loads(await asyncio.wait_for(ws.recv(), TIMEOUT))


async def assert_silent(ws, wait=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), wait)


async def join(port):
    """Connects and returns (websocket, client id)."""
    ws = await connect(ws_url(port))
    hello = await receive(ws)
    assert hello["type"] == protocol.CONNECTED
    return ws, hello["clientId"]


async def http_get(port, path):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"GET {path} HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n".encode())
    await writer.drain()
    raw = await asyncio.wait_for(reader.read(), TIMEOUT)
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b" ")[1])
    return status, body


@pytest.fixture(autouse=True)
def no_ssl(monkeypatch):
    monkeypatch.setattr(config, "ENABLE_SSL", False)
    monkeypatch.setattr(config, "ENABLE_MODERATION", False)


# ==================== Channel ====================

class TestChannel:
    def make(self, state=State.OPEN):
        websocket = MagicMock()
        websocket.state = state
        websocket.send = AsyncMock()
        websocket.close = AsyncMock()
        websocket.remote_address = ("127.0.0.1", 5555)
        return server.Channel(websocket), websocket

    @pytest.mark.asyncio
    async def test_send_on_open_connection(self):
        channel, websocket = self.make()
        assert channel.is_open
        assert await channel.send("frame") is True
        websocket.send.assert_awaited_once_with("frame")

    @pytest.mark.asyncio
    async def test_send_after_close_is_noop(self):
        channel, websocket = self.make(State.CLOSED)
        assert not channel.is_open
        assert await channel.send("frame") is False
        websocket.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_closed_during_send_is_swallowed(self):
        channel, websocket = self.make()
        websocket.send.side_effect = websockets.exceptions.ConnectionClosedError(None, None)
        assert await channel.send_json(protocol.PARTNER_DISCONNECTED) is False

    @pytest.mark.asyncio
    async def test_send_json_encodes(self):
        channel, websocket = self.make()
        await channel.send_json(protocol.PARTNER_FOUND, partnerId="p")
        sent = json.loads(websocket.send.await_args.args[0])
        assert sent == {"type": protocol.PARTNER_FOUND, "partnerId": "p"}


def test_assign_client_id_is_fresh():
    server.reset_state()
    first = server.assign_client_id()
    server.REGISTRY.register(first, MagicMock())
    second = server.assign_client_id()
    assert first != second
    assert len(first) == config.CLIENT_ID_LENGTH


def test_create_ssl_context_falls_back_without_certificates(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "ENABLE_SSL", True)
    monkeypatch.setattr(config, "CERT_FILE", str(tmp_path / "missing-cert.pem"))
    monkeypatch.setattr(config, "KEY_FILE", str(tmp_path / "missing-key.pem"))
    assert server.create_ssl_context() is None


# ==================== HTTP Endpoints ====================

class TestHttpEndpoints:
    @pytest.mark.asyncio
    async def test_health(self):
        async with running_server() as port:
            status, body = await http_get(port, "/health")
        assert status == 200
        payload = json.loads(body)
        assert payload["status"] == "healthy"
        assert payload["uptime"] >= 0

    @pytest.mark.asyncio
    async def test_stats_reflect_connections(self):
        async with running_server() as port:
            x, _ = await join(port)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            status, body = await http_get(port, "/stats")
            await x.close()
        assert status == 200
        stats = json.loads(body)
        assert stats["connected"] == 1
        assert stats["waiting"] == 1

    @pytest.mark.asyncio
    async def test_unknown_path_not_found(self):
        async with running_server() as port:
            status, _ = await http_get(port, "/nope")
        assert status == 404


# ==================== End-to-end Scenarios ====================

class TestScenarios:
    @pytest.mark.asyncio
    async def test_connect_then_wait(self):
        async with running_server() as port:
            x, x_id = await join(port)
            assert server.REGISTRY.lookup(x_id) is not None
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            assert await receive(x) == {"type": protocol.WAITING_FOR_PARTNER}
            await x.close()

    @pytest.mark.asyncio
    async def test_pair_relay_and_chat(self):
        async with running_server() as port:
            x, x_id = await join(port)
            y, y_id = await join(port)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await y.send(json.dumps({"type": protocol.FIND_PARTNER}))

            assert await receive(y) == {"type": protocol.PARTNER_FOUND, "partnerId": x_id}
            assert await receive(x) == {"type": protocol.PARTNER_FOUND, "partnerId": y_id}
            assert server.REGISTRY.waiting_ids() == ()

            offer = json.dumps({"type": protocol.OFFER, "sdp": "v=0", "kind": "video"})
            await x.send(offer)
            assert await asyncio.wait_for(y.recv(), TIMEOUT) == offer

            await x.send(json.dumps({"type": protocol.CHAT_MESSAGE, "message": "hi"}))
            chat = await receive(y)
            assert chat["type"] == protocol.CHAT_MESSAGE
            assert chat["message"] == "hi"
            assert chat["timestamp"].endswith("Z")
            await assert_silent(x)

            await x.close()
            await y.close()

    @pytest.mark.asyncio
    async def test_partner_close_then_rematch(self):
        async with running_server() as port:
            x, x_id = await join(port)
            y, _ = await join(port)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await y.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await receive(y)

            await y.close()
            assert await receive(x) == {"type": protocol.PARTNER_DISCONNECTED}
            assert server.REGISTRY.lookup(x_id).partner_id is None

            z, z_id = await join(port)
            await z.send(json.dumps({"type": protocol.FIND_PARTNER}))
            assert await receive(z) == {"type": protocol.WAITING_FOR_PARTNER}
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            assert await receive(x) == {"type": protocol.PARTNER_FOUND, "partnerId": z_id}
            assert await receive(z) == {"type": protocol.PARTNER_FOUND, "partnerId": x_id}

            await x.close()
            await z.close()

    @pytest.mark.asyncio
    async def test_end_chat(self):
        async with running_server() as port:
            x, x_id = await join(port)
            y, y_id = await join(port)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await y.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await receive(y)

            await x.send(json.dumps({"type": protocol.END_CHAT}))
            assert await receive(y) == {"type": protocol.PARTNER_DISCONNECTED}
            await assert_silent(x)
            assert server.REGISTRY.lookup(x_id).state == "idle"
            assert server.REGISTRY.lookup(y_id).state == "idle"
            assert server.REGISTRY.waiting_ids() == ()

            await x.close()
            await y.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_close_connection(self):
        async with running_server() as port:
            x, _ = await join(port)
            await x.send("this is not json")
            await x.send(json.dumps(["type", "find-partner"]))
            await x.send(json.dumps({"type": "teleport"}))
            await x.send('{"type": "offer", "n": ' + "1" * 5000 + "}")
            await x.send("[" * 30000 + "]" * 30000)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            assert await receive(x) == {"type": protocol.WAITING_FOR_PARTNER}
            await x.close()

    @pytest.mark.asyncio
    async def test_close_removes_client(self):
        async with running_server() as port:
            x, x_id = await join(port)
            await x.send(json.dumps({"type": protocol.FIND_PARTNER}))
            await receive(x)
            await x.close()
            for _ in range(50):
                if x_id not in server.REGISTRY:
                    break
                await asyncio.sleep(0.02)
            assert x_id not in server.REGISTRY
            assert server.REGISTRY.waiting_ids() == ()


# ==================== Rate Limiting ====================

class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_message_flood_closes_connection(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_MESSAGES_PER_CONNECTION", 3)
        async with running_server() as port:
            x, x_id = await join(port)
            for _ in range(4):
                await x.send(json.dumps({"type": "noise"}))
            error = await receive(x)
            assert error["type"] == protocol.ERROR
            with pytest.raises(websockets.exceptions.ConnectionClosed):
                await asyncio.wait_for(x.recv(), TIMEOUT)
            assert x.close_code == 1008

    @pytest.mark.asyncio
    async def test_connection_flood_rejected(self, monkeypatch):
        monkeypatch.setattr(config, "MAX_CONNECTIONS_PER_IP", 1)
        async with running_server() as port:
            x, _ = await join(port)
            y = await connect(ws_url(port))
            with pytest.raises(websockets.exceptions.ConnectionClosed):
                await asyncio.wait_for(y.recv(), TIMEOUT)
            assert y.close_code == 1008
            assert server.REGISTRY.connected_count == 1
            await x.close()

    @pytest.mark.asyncio
    async def test_idle_addresses_are_forgotten(self):
        async with running_server() as port:
            server.CONNECTION_ATTEMPTS["203.0.113.7"] = [time.time() - config.CONNECTION_WINDOW_SECONDS - 1]
            x, _ = await join(port)
            assert "203.0.113.7" not in server.CONNECTION_ATTEMPTS
            assert "127.0.0.1" in server.CONNECTION_ATTEMPTS
            await x.close()
