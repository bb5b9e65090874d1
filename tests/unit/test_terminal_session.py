"""Unit tests for a single TerminalSession: I/O, resize, guard and close paths."""

import asyncio
import socket
import threading
from unittest import mock

import docker
import pytest

from tests.fakes import FakeDockerClient, compose_container, read_until
from use_cases.terminal_session import TerminalSessionManager
from use_cases.terminal_session.errors import (
    InvalidGeometryError,
    SessionClosedError,
    SessionIOError,
)
from use_cases.terminal_session.session import OUTPUT_QUEUE_SIZE, no_output_message

CONTAINER_ID = "c0ffee" * 8


async def _open(manager, **kwargs):
    output = asyncio.Queue()
    closes = asyncio.Queue()
    session = await manager.create_session(
        "demo",
        "web",
        CONTAINER_ID,
        on_output=output.put_nowait,
        on_close=closes.put_nowait,
        **kwargs,
    )
    return session, output, closes


class TestSessionIO:
    """Test input and output through the exec stream."""

    @pytest.mark.asyncio
    async def test_written_bytes_come_back_in_order(self, manager):
        session, output, _ = await _open(manager)

        await session.write(b"ls\n")
        await session.write(b"pwd\n")

        assert await read_until(output, b"ls\npwd\n") == b"ls\npwd\n"

    @pytest.mark.asyncio
    async def test_output_before_callback_is_held_back(self, manager):
        session = await manager.create_session("demo", "web", CONTAINER_ID)
        await session.write(b"early\n")
        await asyncio.sleep(0.05)

        output = asyncio.Queue()
        session.set_output_callback(output.put_nowait)

        assert b"early\n" in await read_until(output, b"early\n")

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self, manager):
        received = asyncio.Queue()

        async def on_output(data):
            await received.put(data)

        session = await manager.create_session(
            "demo", "web", CONTAINER_ID, on_output=on_output
        )
        await session.write(b"hello")

        assert await read_until(received, b"hello") == b"hello"

    @pytest.mark.asyncio
    async def test_write_after_close(self, manager):
        session, _, _ = await _open(manager)
        session.close()

        with pytest.raises(SessionClosedError):
            await session.write(b"ls\n")

    @pytest.mark.asyncio
    async def test_write_to_broken_stream(self, manager, fake_docker):
        session, _, _ = await _open(manager)
        # Swap in a stream that refuses writes
        broken, peer = socket.socketpair()
        peer.close()
        broken.shutdown(socket.SHUT_WR)
        original, session._sock = session._sock, broken
        try:
            with pytest.raises(SessionIOError):
                await session.write(b"ls\n")
        finally:
            session._sock = original
            broken.close()


class TestSessionResize:

    @pytest.mark.asyncio
    async def test_resize_updates_exec(self, manager, fake_docker):
        session, _, _ = await _open(manager)

        await session.resize(132, 50)

        assert fake_docker.api.resizes[-1] == (session.exec_id, 132, 50)
        assert (session.cols, session.rows) == (132, 50)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cols,rows", [(0, 24), (80, 0), (-1, -1)])
    async def test_resize_rejects_non_positive(self, manager, cols, rows):
        session, _, _ = await _open(manager)

        with pytest.raises(InvalidGeometryError):
            await session.resize(cols, rows)

    @pytest.mark.asyncio
    async def test_resize_after_close(self, manager):
        session, _, _ = await _open(manager)
        session.close()

        with pytest.raises(SessionClosedError):
            await session.resize(100, 30)

    @pytest.mark.asyncio
    async def test_resize_docker_failure(self, manager, fake_docker):
        session, _, _ = await _open(manager)

        with mock.patch.object(
            fake_docker.api,
            "exec_resize",
            side_effect=docker.errors.APIError("resize rejected"),
        ):
            with pytest.raises(SessionIOError) as exc_info:
                await session.resize(100, 30)
        assert exc_info.value.message == "Failed to resize terminal"


class TestSessionClose:
    """Test every way a session can end."""

    @pytest.mark.asyncio
    async def test_explicit_close_reports_exit_code(self, manager):
        session, _, closes = await _open(manager)

        assert session.close(0) is True

        assert await asyncio.wait_for(closes.get(), timeout=2) == 0
        await session.wait_closed(timeout=2)
        assert closes.empty()

    @pytest.mark.asyncio
    async def test_close_is_delivered_after_output(self, manager):
        events = []
        output = asyncio.Queue()
        done = asyncio.Event()

        def on_output(data):
            events.append(("output", data))
            output.put_nowait(data)

        def on_close(code):
            events.append(("close", code))
            done.set()

        session = await manager.create_session(
            "demo",
            "web",
            CONTAINER_ID,
            on_output=on_output,
            on_close=on_close,
        )
        await session.write(b"bye")
        await read_until(output, b"bye")
        session.close()

        await asyncio.wait_for(done.wait(), timeout=2)
        assert events[-1] == ("close", 0)
        assert b"".join(data for kind, data in events if kind == "output") == b"bye"

    @pytest.mark.asyncio
    async def test_process_exit_closes_session(self, manager, fake_docker):
        """When the shell exits its code is reported and the session is dropped."""
        fake_docker.api.process_exit_code = 3
        session, _, closes = await _open(manager)

        fake_docker.api.streams[session.exec_id].shutdown(socket.SHUT_RDWR)

        assert await asyncio.wait_for(closes.get(), timeout=2) == 3
        assert session.closed
        assert manager.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_close_during_pending_write(self, manager):
        session, _, closes = await _open(manager)

        write_task = asyncio.create_task(session.write(b"x" * 4096))
        assert session.close() is True

        with pytest.raises(SessionClosedError):
            await write_task
        assert await asyncio.wait_for(closes.get(), timeout=2) == 0


class TestNoOutputGuard:

    @pytest.mark.asyncio
    async def test_silent_shell_gets_warning(self):
        client = FakeDockerClient(echo=False)
        client.containers.items.append(compose_container(CONTAINER_ID, "demo", "web"))
        manager = TerminalSessionManager(client, probe_delay=0, output_guard_seconds=0.05)
        try:
            session, output, _ = await _open(manager)

            message = await read_until(output, b"Tried shells")

            assert message == no_output_message(["/bin/bash -l"])
            assert b"Terminal Error: Shell may not be available" in message
            assert not session.closed
        finally:
            await manager.shutdown(timeout=2)

    @pytest.mark.asyncio
    async def test_guard_lists_every_tried_shell(self):
        client = FakeDockerClient(working_shells=("/bin/sh",), echo=False)
        client.containers.items.append(compose_container(CONTAINER_ID, "demo", "web"))
        manager = TerminalSessionManager(client, probe_delay=0, output_guard_seconds=0.05)
        try:
            _, output, _ = await _open(manager)

            message = await read_until(output, b"Tried shells")

            assert b"/bin/bash -l, /bin/bash, /bin/sh" in message
        finally:
            await manager.shutdown(timeout=2)

    @pytest.mark.asyncio
    async def test_output_disarms_guard(self):
        client = FakeDockerClient()
        client.containers.items.append(compose_container(CONTAINER_ID, "demo", "web"))
        manager = TerminalSessionManager(client, probe_delay=0, output_guard_seconds=0.2)
        try:
            session, output, _ = await _open(manager)
            await session.write(b"prompt$ ")
            await read_until(output, b"prompt$ ")

            await asyncio.sleep(0.3)

            assert output.empty()
        finally:
            await manager.shutdown(timeout=2)


class TestOutputBackpressure:
    """Test that a slow output consumer bounds what the session buffers."""

    @pytest.mark.asyncio
    async def test_slow_consumer_holds_pump_back(self):
        client = FakeDockerClient(echo=False)
        client.containers.items.append(compose_container(CONTAINER_ID, "demo", "web"))
        manager = TerminalSessionManager(client, probe_delay=0)
        delivered = []

        async def slow_output(data):
            await asyncio.sleep(0.05)
            delivered.append(data)

        try:
            session = await manager.create_session(
                "demo", "web", CONTAINER_ID, on_output=slow_output
            )
            container_end = client.api.streams[session.exec_id]
            flood = threading.Thread(
                target=_send_quietly, args=(container_end, b"y\n" * (2 * 1024 * 1024)), daemon=True
            )
            flood.start()

            await asyncio.sleep(0.5)

            assert 0 < session._events.qsize() <= OUTPUT_QUEUE_SIZE
            assert delivered
        finally:
            await manager.shutdown(timeout=2)

    @pytest.mark.asyncio
    async def test_close_with_full_queue(self):
        """Closing while the pump is blocked on a full queue still reports the close."""
        client = FakeDockerClient(echo=False)
        client.containers.items.append(compose_container(CONTAINER_ID, "demo", "web"))
        manager = TerminalSessionManager(client, probe_delay=0)
        try:
            # No output callback yet, so nothing drains the queue
            session = await manager.create_session("demo", "web", CONTAINER_ID)
            closes = asyncio.Queue()
            session.set_close_callback(closes.put_nowait)

            container_end = client.api.streams[session.exec_id]
            flood = threading.Thread(
                target=_send_quietly, args=(container_end, b"z" * (256 * 1024)), daemon=True
            )
            flood.start()
            for _ in range(100):
                if session._events.full():
                    break
                await asyncio.sleep(0.01)
            assert session._events.full()

            session.close()

            assert await asyncio.wait_for(closes.get(), timeout=2) == 0
            await session.wait_closed(timeout=2)
            assert session._pump_task.done()
        finally:
            await manager.shutdown(timeout=2)


def _send_quietly(sock, payload):
    try:
        sock.sendall(payload)
    except OSError:
        pass
