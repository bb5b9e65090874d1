"""
Terminal Session Manager

Owns the registry of live terminal sessions and the algorithm that opens
them: probe a list of candidate shells inside the container, then start
the first one that works as an interactive TTY exec and take over its
stream.

One manager is built at startup and shared by every terminal connection.
"""

import asyncio
import threading
import time
import uuid
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence
from tools.config import DEFAULT_MAX_SESSIONS
from tools.docker_tools import DOCKER_ERRORS, short_id
from tools.logger import log_debug, log_error, log_info, log_warning
from use_cases.terminal_session.errors import (
    NoCompatibleShellError,
    SessionCreateError,
    SessionNotFoundError,
)
from use_cases.terminal_session.session import (
    OUTPUT_GUARD_SECONDS,
    CloseCallback,
    OutputCallback,
    TerminalSession,
)

# Tried in order, first one whose probe exits 0 wins
SHELL_CANDIDATES = (
    ("/bin/bash", "-l"),
    ("/bin/bash",),
    ("/bin/sh",),
    ("/bin/ash",),
    ("/bin/dash",),
    ("sh",),
)

PROBE_COMMAND = ("-c", "echo test")
PROBE_SETTLE_SECONDS = 0.1

# Sessions that may be probing for a shell at the same time
MAX_CONCURRENT_OPENS = 8

DEFAULT_COLS = 80
DEFAULT_ROWS = 24

OpenedShell = namedtuple("OpenedShell", ["exec_id", "shell", "exec_socket", "tried"])


def _shell_name(shell: Sequence[str]) -> str:
    return " ".join(shell)


def _close_quietly(stream) -> None:
    try:
        stream.close()
    except OSError as e:
        log_debug(f"Error closing probe stream: {e}")


class TerminalSessionManager:
    """
    Registry of terminal sessions keyed by session id.

    Args:
        docker_client: docker.DockerClient used for every exec call
        max_sessions: Upper bound on concurrently open sessions
        shells: Candidate shell commands, in preference order
        probe_delay: Seconds to let a probe exec finish before inspecting it
        output_guard_seconds: Grace period before the no-output warning
    """

    def __init__(
        self,
        docker_client,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        shells: Sequence[Sequence[str]] = SHELL_CANDIDATES,
        probe_delay: float = PROBE_SETTLE_SECONDS,
        output_guard_seconds: float = OUTPUT_GUARD_SECONDS,
    ):
        self._client = docker_client
        self._max_sessions = max_sessions
        self._shells = [tuple(shell) for shell in shells]
        self._probe_delay = probe_delay
        self._output_guard_seconds = output_guard_seconds

        self._sessions: Dict[str, TerminalSession] = {}
        self._pending: List[threading.Event] = []
        self._lock = threading.RLock()
        self._shut_down = False

        # Short Docker API calls: container lookups, resizes, inspects
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="terminal_")
        # Shell probing and attach, which sleeps between probes
        self._open_executor = ThreadPoolExecutor(
            max_workers=min(max_sessions, MAX_CONCURRENT_OPENS),
            thread_name_prefix="terminal_open_",
        )
        # Each open session parks one worker in recv() and briefly uses another for writes
        self._io_executor = ThreadPoolExecutor(
            max_workers=max_sessions * 2, thread_name_prefix="terminal_io_"
        )

    @property
    def executor(self) -> ThreadPoolExecutor:
        return self._executor

    def _new_session_id(self) -> str:
        with self._lock:
            while True:
                session_id = str(uuid.uuid4())
                if session_id not in self._sessions:
                    return session_id

    async def create_session(
        self,
        stack_name: str,
        service_name: str,
        container_id: str,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        on_output: Optional[OutputCallback] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> TerminalSession:
        """
        Open an interactive shell in a running container.

        Args:
            stack_name: Stack the container was resolved under
            service_name: Service the container was resolved under
            container_id: Id of an already validated, running container
            cols: Initial terminal columns, non-positive means default
            rows: Initial terminal rows, non-positive means default
            on_output: Optional output callback installed before the pump starts
            on_close: Optional close callback

        Returns:
            The started, registered TerminalSession

        Raises:
            NoCompatibleShellError: no candidate shell passed its probe
            SessionCreateError: the exec could not be created or attached
        """
        if cols <= 0:
            cols = DEFAULT_COLS
        if rows <= 0:
            rows = DEFAULT_ROWS

        with self._lock:
            if self._shut_down:
                raise SessionCreateError("Terminal manager is shut down")
            if len(self._sessions) + len(self._pending) >= self._max_sessions:
                raise SessionCreateError(
                    "Too many terminal sessions", f"limit is {self._max_sessions}"
                )
            lifetime = threading.Event()
            self._pending.append(lifetime)

        session_id = self._new_session_id()

        log_info(
            f"Creating terminal session {session_id} for stack {stack_name}, "
            f"service {service_name}, container {short_id(container_id)} ({cols}x{rows})"
        )

        loop = asyncio.get_running_loop()
        try:
            opened = await loop.run_in_executor(
                self._open_executor,
                self._open_shell_sync,
                session_id,
                container_id,
                cols,
                rows,
                lifetime,
            )
        except BaseException:
            lifetime.set()
            raise
        finally:
            with self._lock:
                self._pending.remove(lifetime)

        session = TerminalSession(
            session_id=session_id,
            stack_name=stack_name,
            service_name=service_name,
            container_id=container_id,
            exec_id=opened.exec_id,
            shell=opened.shell,
            exec_socket=opened.exec_socket,
            docker_api=self._client.api,
            cols=cols,
            rows=rows,
            lifetime=lifetime,
            io_executor=self._io_executor,
            control_executor=self._executor,
            tried_shells=opened.tried,
            on_released=self._release,
            output_guard_seconds=self._output_guard_seconds,
        )
        session.set_output_callback(on_output)
        session.set_close_callback(on_close)

        with self._lock:
            if self._shut_down or lifetime.is_set():
                abandoned = True
            else:
                abandoned = False
                self._sessions[session_id] = session

        session.start()

        if abandoned:
            session.close(0)
            raise SessionCreateError("Terminal manager is shut down")

        log_info(
            f"Terminal session {session_id} created "
            f"(stack {stack_name}, service {service_name})"
        )
        return session

    def _probe_shell(self, container_id: str, shell: Sequence[str]) -> bool:
        """
        Run ``<shell> -c "echo test"`` without a TTY and check it exits 0.

        The probe is attached and immediately detached only to get it started.
        """
        api = self._client.api
        try:
            probe = api.exec_create(
                container_id,
                list(shell) + list(PROBE_COMMAND),
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
            )
            probe_stream = api.exec_start(probe["Id"], socket=True)
            _close_quietly(probe_stream)

            time.sleep(self._probe_delay)

            info = api.exec_inspect(probe["Id"])
        except DOCKER_ERRORS as e:
            log_debug(f"Shell probe {_shell_name(shell)} failed: {e}")
            return False

        exit_code = info.get("ExitCode")
        if exit_code != 0:
            log_debug(f"Shell probe {_shell_name(shell)} exited with {exit_code}")
            return False
        return True

    def _open_shell_sync(
        self,
        session_id: str,
        container_id: str,
        cols: int,
        rows: int,
        lifetime: threading.Event,
    ) -> OpenedShell:
        api = self._client.api
        tried = []
        selected = None
        exec_id = None

        for shell in self._shells:
            if lifetime.is_set():
                raise SessionCreateError("Session creation cancelled", session_id)

            tried.append(_shell_name(shell))
            if not self._probe_shell(container_id, shell):
                continue

            try:
                exec_instance = api.exec_create(
                    container_id,
                    list(shell),
                    stdin=True,
                    stdout=True,
                    stderr=True,
                    tty=True,
                    environment={
                        "TERM": "xterm-256color",
                        "COLUMNS": str(cols),
                        "LINES": str(rows),
                    },
                )
            except DOCKER_ERRORS as e:
                log_warning(f"Failed to create exec for shell {_shell_name(shell)}: {e}")
                continue

            selected = shell
            exec_id = exec_instance["Id"]
            log_info(f"Shell {_shell_name(shell)} selected for terminal session {session_id}")
            break

        if selected is None:
            log_error(
                f"No compatible shell found in container {short_id(container_id)} "
                f"for session {session_id}"
            )
            raise NoCompatibleShellError(
                "no compatible shell found in container",
                f"tried: {', '.join(tried)}",
            )

        try:
            exec_socket = api.exec_start(exec_id, tty=True, socket=True, demux=False)
        except DOCKER_ERRORS as e:
            log_error(f"Failed to attach to exec {short_id(exec_id)} for session {session_id}: {e}")
            raise SessionCreateError("failed to attach to exec", str(e))

        try:
            api.exec_resize(exec_id, height=rows, width=cols)
        except DOCKER_ERRORS as e:
            log_warning(f"Initial resize of exec {short_id(exec_id)} failed: {e}")

        log_info(f"PTY allocated and attached for session {session_id} (exec {short_id(exec_id)})")
        return OpenedShell(exec_id, list(selected), exec_socket, tried)

    def get_session(self, session_id: str) -> Optional[TerminalSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def close_session(self, session_id: str, exit_code: int = 0) -> None:
        """
        Close a registered session and drop it from the registry.

        Raises:
            SessionNotFoundError: no session with that id is registered
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                log_warning(f"Attempted to close non-existent session {session_id}")
                raise SessionNotFoundError("Session not found", session_id)

            log_info(
                f"Closing terminal session {session_id} "
                f"(stack {session.stack_name}, service {session.service_name})"
            )
            session.close(exit_code)

    def close_all_sessions(self) -> None:
        with self._lock:
            log_info(f"Closing all terminal sessions ({len(self._sessions)} open)")
            for lifetime in self._pending:
                lifetime.set()
            sessions = list(self._sessions.values())
            self._sessions.clear()
            for session in sessions:
                session.close(0)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Close every session, wait for their tasks and stop the worker pools."""
        with self._lock:
            self._shut_down = True
            sessions = list(self._sessions.values())

        self.close_all_sessions()

        for session in sessions:
            await session.wait_closed(timeout=timeout)

        self._executor.shutdown(wait=False)
        self._open_executor.shutdown(wait=False)
        self._io_executor.shutdown(wait=False)
        log_info("Terminal session manager stopped")

    def _release(self, session: TerminalSession) -> None:
        with self._lock:
            if self._sessions.get(session.id) is session:
                del self._sessions[session.id]
                log_debug(f"Terminal session {session.id} removed from registry")
