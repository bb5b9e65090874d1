"""Tests for terminal WebSocket pings and the idle read deadline."""

import asyncio

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web

from controllers.terminal_controller import TerminalProtocolHandler
from use_cases.terminal_session import TerminalSessionManager

START = {"type": "terminal_start", "stack_name": "demo", "service_name": "web"}


@pytest_asyncio.fixture
async def make_client(aiohttp_client, fake_docker):
    """Build a client for a terminal route with short keepalive timings."""
    managers = []

    async def factory(ping_interval, receive_timeout):
        manager = TerminalSessionManager(fake_docker, max_sessions=4, probe_delay=0)
        managers.append(manager)

        async def handle(request):
            ws = web.WebSocketResponse(receive_timeout=receive_timeout, autoping=True)
            await ws.prepare(request)
            handler = TerminalProtocolHandler(
                ws, manager, fake_docker, ping_interval=ping_interval
            )
            await handler.run()
            return ws

        app = web.Application()
        app.router.add_get("/ws/terminal", handle)
        client = await aiohttp_client(app)
        return client, manager

    yield factory

    for manager in managers:
        await manager.shutdown(timeout=2)


async def _start(ws):
    await ws.send_json(START)
    reply = await asyncio.wait_for(ws.receive_json(), timeout=2)
    assert reply["type"] == "success", reply
    return reply["session_id"]


class TestKeepalive:

    @pytest.mark.asyncio
    async def test_server_sends_pings(self, make_client):
        client, _ = await make_client(ping_interval=0.05, receive_timeout=5)
        ws = await client.ws_connect("/ws/terminal", autoping=False)

        msg = await asyncio.wait_for(ws.receive(), timeout=2)

        assert msg.type == WSMsgType.PING
        await ws.close()

    @pytest.mark.asyncio
    async def test_idle_client_is_disconnected(self, make_client):
        """Without any inbound frame the read deadline closes the connection."""
        client, manager = await make_client(ping_interval=10, receive_timeout=0.3)
        ws = await client.ws_connect("/ws/terminal", autoping=False)
        session_id = await _start(ws)

        closed = False
        for _ in range(10):
            msg = await asyncio.wait_for(ws.receive(), timeout=2)
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED):
                closed = True
                break

        assert closed
        assert manager.get_session(session_id) is None
        assert manager.session_count() == 0

    @pytest.mark.asyncio
    async def test_pongs_keep_connection_open(self, make_client):
        """Answering pings resets the read deadline."""
        client, manager = await make_client(ping_interval=0.05, receive_timeout=0.3)
        ws = await client.ws_connect("/ws/terminal", autoping=True)
        session_id = await _start(ws)

        # Reading lets the client answer pings; nothing else arrives
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(ws.receive(), timeout=0.8)

        assert not ws.closed
        assert manager.get_session(session_id) is not None
        await ws.close()
