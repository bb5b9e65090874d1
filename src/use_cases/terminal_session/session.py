"""
Terminal Session

One interactive shell running inside a container through Docker exec.
The session owns the hijacked exec stream: a pump task reads output from
it, write() and resize() push input and geometry changes into it, and
close() tears everything down exactly once.

Output and the final close notification travel through a single queue
that a dispatcher task drains, so callbacks always run off the pump and
in stream order, with the close notification last. The queue is bounded,
so a consumer slower than the shell holds the pump back.
"""

import asyncio
import inspect
import socket
import threading
from functools import partial
from typing import Awaitable, Callable, Optional, Sequence, Union
from tools.docker_tools import DOCKER_ERRORS, short_id, socket_of
from tools.logger import log_debug, log_error, log_info, log_warning
from use_cases.terminal_session.errors import (
    InvalidGeometryError,
    SessionClosedError,
    SessionIOError,
)

READ_CHUNK_SIZE = 1024
OUTPUT_GUARD_SECONDS = 5.0
# Chunks held between the pump and the dispatcher before the pump waits
OUTPUT_QUEUE_SIZE = 64

_OUTPUT = "output"
_CLOSE = "close"

OutputCallback = Callable[[bytes], Union[None, Awaitable[None]]]
CloseCallback = Callable[[int], Union[None, Awaitable[None]]]


def no_output_message(shells: Sequence[str]) -> bytes:
    tried = ", ".join(shells)
    return (
        "\r\n\x1b[31mTerminal Error: Shell may not be available in this container.\r\n"
        f"Tried shells: {tried}\x1b[0m\r\n"
    ).encode("utf-8")


async def _invoke(callback, *args) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class TerminalSession:
    """
    A live exec stream bound to one container process.

    Created by TerminalSessionManager once a shell has been probed and the
    interactive exec attached. Must be started and closed from the event loop
    that owns it; write() and resize() are coroutines safe to call while a
    close is in flight.
    """

    def __init__(
        self,
        session_id: str,
        stack_name: str,
        service_name: str,
        container_id: str,
        exec_id: str,
        shell: Sequence[str],
        exec_socket,
        docker_api,
        cols: int,
        rows: int,
        lifetime: threading.Event,
        io_executor=None,
        control_executor=None,
        tried_shells: Sequence[str] = (),
        on_released: Optional[Callable[["TerminalSession"], None]] = None,
        output_guard_seconds: float = OUTPUT_GUARD_SECONDS,
    ):
        self.id = session_id
        self.stack_name = stack_name
        self.service_name = service_name
        self.container_id = container_id
        self.exec_id = exec_id
        self.shell = list(shell)
        self.cols = cols
        self.rows = rows

        self._exec_socket = exec_socket
        self._sock = socket_of(exec_socket) if exec_socket is not None else None
        self._api = docker_api
        self._lifetime = lifetime
        self._io_executor = io_executor
        self._control_executor = control_executor
        self._tried_shells = list(tried_shells) or [" ".join(self.shell)]
        self._on_released = on_released
        self._output_guard_seconds = output_guard_seconds

        self._lock = threading.Lock()
        self._closed = False
        self._output_seen = False
        self._on_output: Optional[OutputCallback] = None
        self._on_close: Optional[CloseCallback] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None
        self._callbacks_ready: Optional[asyncio.Event] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._guard_handle: Optional[asyncio.TimerHandle] = None
        self._close_post: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start the output pump, the dispatcher and the no-output guard."""
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue(maxsize=OUTPUT_QUEUE_SIZE)
        self._callbacks_ready = asyncio.Event()

        with self._lock:
            if self._on_output is not None:
                self._callbacks_ready.set()

        self._dispatch_task = self._loop.create_task(self._dispatch_loop())
        self._pump_task = self._loop.create_task(self._pump())
        self._guard_handle = self._loop.call_later(
            self._output_guard_seconds, self._on_output_guard
        )

    def set_output_callback(self, callback: Optional[OutputCallback]) -> None:
        """
        Install the output callback, replacing any previous one.

        Output that arrived before the first callback was installed is held
        back and delivered once it is.
        """
        with self._lock:
            self._on_output = callback
        if callback is not None:
            self._post(None)

    def set_close_callback(self, callback: Optional[CloseCallback]) -> None:
        with self._lock:
            self._on_close = callback

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def cancelled(self) -> bool:
        return self._lifetime.is_set()

    async def write(self, data: bytes) -> None:
        """
        Send raw input bytes to the shell.

        Raises:
            SessionClosedError: the session was already closed
            SessionIOError: the stream rejected the write
        """
        with self._lock:
            if self._closed or self._sock is None:
                raise SessionClosedError("Session is closed", self.id)
            sock = self._sock

        log_debug(f"Writing {len(data)} bytes to terminal session {self.id}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._io_executor, sock.sendall, data)
        except OSError as e:
            log_error(f"Terminal I/O write error for session {self.id}: {e}")
            raise SessionIOError("Write failed", str(e))

    async def resize(self, cols: int, rows: int) -> None:
        """
        Change the terminal geometry of the running exec.

        Raises:
            InvalidGeometryError: cols or rows is not positive
            SessionClosedError: closed, or no exec is bound
            SessionIOError: Docker rejected the resize
        """
        if cols <= 0 or rows <= 0:
            raise InvalidGeometryError("Invalid terminal size", f"{cols}x{rows}")

        with self._lock:
            if self._closed:
                raise SessionClosedError("Session is closed", self.id)
            if not self.exec_id:
                raise SessionClosedError("No exec session to resize", self.id)
            self.cols = cols
            self.rows = rows
            exec_id = self.exec_id

        log_debug(f"Resizing terminal session {self.id} to {cols}x{rows}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                self._control_executor,
                partial(self._api.exec_resize, exec_id, height=rows, width=cols),
            )
        except DOCKER_ERRORS as e:
            log_error(
                f"Terminal resize to {cols}x{rows} failed for session {self.id}: {e}"
            )
            raise SessionIOError("Failed to resize terminal", str(e))

    def close(self, exit_code: int = 0) -> bool:
        """
        Tear the session down. Only the first call has any effect.

        Returns:
            True if this call closed the session, False if it was already closed
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            exec_socket = self._exec_socket
            sock = self._sock
            self._exec_socket = None
            self._sock = None

        log_info(f"Closing terminal session {self.id} (exit code {exit_code})")

        self._lifetime.set()

        if self._guard_handle is not None:
            self._guard_handle.cancel()

        _shutdown_stream(sock, exec_socket)

        self._post((_CLOSE, exit_code))
        self._schedule_exec_release()

        if self._on_released is not None:
            try:
                self._on_released(self)
            except Exception as e:
                log_error(f"Error releasing terminal session {self.id}: {e}")

        log_info(
            f"Terminal session {self.id} closed "
            f"(stack {self.stack_name}, service {self.service_name})"
        )
        return True

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        """Wait for the pump and dispatcher tasks to finish."""
        tasks = [t for t in (self._pump_task, self._dispatch_task) if t is not None]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    def _post(self, event) -> None:
        """Queue the close event for the dispatcher. None only wakes it."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._post_on_loop, event)

    def _post_on_loop(self, event) -> None:
        if event is not None:
            # Queued behind any output still waiting for room
            self._close_post = self._loop.create_task(self._events.put(event))
        self._callbacks_ready.set()

    async def _pump(self) -> None:
        """Read the exec stream until it ends and hand chunks to the dispatcher."""
        log_debug(f"Starting output pump for terminal session {self.id}")
        loop = asyncio.get_running_loop()

        with self._lock:
            sock = self._sock

        clean_end = False
        while sock is not None and not self._lifetime.is_set():
            try:
                data = await loop.run_in_executor(
                    self._io_executor, sock.recv, READ_CHUNK_SIZE
                )
            except OSError as e:
                if not self.closed:
                    log_error(f"Terminal I/O read error for session {self.id}: {e}")
                break

            if not data:
                clean_end = True
                log_debug(f"Exec stream ended for terminal session {self.id}")
                break

            if not self._output_seen:
                self._output_seen = True
                if self._guard_handle is not None:
                    self._guard_handle.cancel()

            log_debug(f"Terminal output received for session {self.id}: {len(data)} bytes")
            await self._events.put((_OUTPUT, data))

        if self.closed:
            return

        exit_code = 0
        if clean_end:
            exit_code = await loop.run_in_executor(
                self._control_executor, self._inspect_exit_code
            )
        self.close(exit_code)

    async def _dispatch_loop(self) -> None:
        await self._callbacks_ready.wait()

        while True:
            kind, payload = await self._events.get()

            with self._lock:
                callback = self._on_output if kind == _OUTPUT else self._on_close

            if callback is not None:
                try:
                    await _invoke(callback, payload)
                except Exception as e:
                    log_error(f"Error in terminal {kind} callback for session {self.id}: {e}")

            if kind == _CLOSE:
                self._drain_events()
                return

    def _drain_events(self) -> None:
        """Drop output read after the close so a pump blocked on put() can finish."""
        while True:
            try:
                self._events.get_nowait()
            except asyncio.QueueEmpty:
                return

    def _on_output_guard(self) -> None:
        if self._output_seen or self.closed:
            return
        log_warning(
            f"No output from terminal session {self.id} after "
            f"{self._output_guard_seconds:g}s, shell may be unusable"
        )
        self._events.put_nowait((_OUTPUT, no_output_message(self._tried_shells)))

    def _inspect_exit_code(self) -> int:
        try:
            info = self._api.exec_inspect(self.exec_id)
        except DOCKER_ERRORS as e:
            log_debug(f"Could not inspect exec {short_id(self.exec_id)}: {e}")
            return 0
        if info.get("Running"):
            return 0
        exit_code = info.get("ExitCode")
        return exit_code if isinstance(exit_code, int) else 0

    def _schedule_exec_release(self) -> None:
        if not self.exec_id or self._api is None:
            return
        if self._loop is not None and not self._loop.is_closed():
            self._loop.run_in_executor(self._control_executor, self._release_exec)
        else:
            self._release_exec()

    def _release_exec(self) -> None:
        """
        Best-effort nudge for an exec that may still be waiting on stdin.

        Docker offers no way to kill an exec. Closing the stream hangs up the
        TTY, which ends ordinary shells; anything still running afterwards is
        poked with a detached start and otherwise left to exit on its own.
        """
        try:
            info = self._api.exec_inspect(self.exec_id)
        except DOCKER_ERRORS as e:
            log_debug(f"Error inspecting exec {short_id(self.exec_id)}: {e}")
            return

        if not info.get("Running", False):
            log_debug(f"Exec {short_id(self.exec_id)} has already exited")
            return

        try:
            self._api.exec_start(self.exec_id, detach=True)
        except DOCKER_ERRORS as e:
            log_debug(
                f"Exec {short_id(self.exec_id)} still running after close, "
                f"it will exit when its TTY hangs up: {e}"
            )


def _shutdown_stream(sock, exec_socket) -> None:
    # shutdown() wakes a recv() blocked in another thread, close() alone does not
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError as e:
            log_debug(f"Error closing exec socket: {e}")

    if exec_socket is not None and exec_socket is not sock:
        try:
            exec_socket.close()
        except OSError as e:
            log_debug(f"Error closing exec stream: {e}")
