"""
Terminal Protocol Handler

Drives one terminal WebSocket connection. A single reader decodes the
envelopes in arrival order and moves the connection through:

    AWAITING_START --terminal_start--> SESSION_ACTIVE --terminal_close--> CLOSED

Failed operations answer with one error envelope and leave the state as
it was. Output and close callbacks from the session, the keepalive pings
and the reader all write to the same socket, so every write goes through
one lock.
"""

import asyncio
import json
from enum import Enum
from aiohttp import WSMsgType
from controllers.terminal_controller import messages
from controllers.terminal_controller.keepalive import Keepalive, PING_INTERVAL
from tools.audit_log import AUTH_STATUS_SUCCESS, RequestLogEntry
from tools.contract_validation import ContractValidationError, check_contract
from tools.logger import log_debug, log_error, log_info, log_warning
from use_cases.terminal_session import resolve_container
from use_cases.terminal_session.errors import (
    ContainerResolutionError,
    NoCompatibleShellError,
    SessionNotFoundError,
    TerminalError,
)

# Time given to trailing output after a client-requested close (seconds)
CLOSE_GRACE_SECONDS = 0.1

TERMINAL_PATH = "/ws/terminal"


class HandlerState(Enum):
    """Terminal connection states."""
    AWAITING_START = "awaiting_start"
    SESSION_ACTIVE = "session_active"
    CLOSED = "closed"


class TerminalProtocolHandler:
    """
    State machine for one terminal WebSocket.

    Args:
        ws: Prepared aiohttp WebSocketResponse
        manager: Shared TerminalSessionManager
        docker_client: Client used to resolve containers
        audit_log: Optional audit sink for session creation records
        request: The upgrade request, used for audit metadata
    """

    def __init__(
        self,
        ws,
        manager,
        docker_client,
        audit_log=None,
        request=None,
        close_grace: float = CLOSE_GRACE_SECONDS,
        ping_interval: float = PING_INTERVAL,
    ):
        self._ws = ws
        self._manager = manager
        self._docker_client = docker_client
        self._audit_log = audit_log
        self._request = request
        self._close_grace = close_grace
        self._write_lock = asyncio.Lock()
        self._keepalive = Keepalive(ws, self._write_lock, ping_interval)
        self._session = None
        self.state = HandlerState.AWAITING_START

        self._handlers = {
            messages.TERMINAL_START: self._handle_start,
            messages.TERMINAL_INPUT: self._handle_input,
            messages.TERMINAL_RESIZE: self._handle_resize,
            messages.TERMINAL_CLOSE: self._handle_close,
        }

    @property
    def session(self):
        return self._session

    async def run(self) -> None:
        """Read and handle messages until the connection ends."""
        self._keepalive.start()
        try:
            while self.state is not HandlerState.CLOSED:
                try:
                    msg = await self._ws.receive()
                except asyncio.TimeoutError:
                    log_warning("Terminal WebSocket read deadline exceeded, closing")
                    break

                if msg.type == WSMsgType.TEXT:
                    await self.handle_raw(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await self.handle_raw(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == WSMsgType.ERROR:
                    log_error(f"Terminal WebSocket read error: {self._ws.exception()}")
                    break
                elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    log_debug("Terminal WebSocket closed by peer")
                    break
        finally:
            self.state = HandlerState.CLOSED
            await self._keepalive.stop()
            self._close_active_session()
            await self._close_connection()

    async def handle_raw(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError as e:
            await self._send_error("Invalid message format", str(e))
            return

        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            await self._send_error("Invalid message format", "message type is required")
            return

        msg_type = message["type"]
        handler = self._handlers.get(msg_type)
        if handler is None:
            log_debug(f"Unknown terminal message type: {msg_type}")
            await self._send_error("Unknown message type", msg_type)
            return

        await handler(message)

    async def _handle_start(self, message: dict) -> None:
        if self._session is not None:
            await self._send_error("Session already created")
            return

        try:
            check_contract(messages.START_MESSAGE, message)
        except ContractValidationError as e:
            await self._send_error("Invalid terminal start request", e.message)
            return

        stack_name = message["stack_name"]
        service_name = message["service_name"]
        container_name = message.get("container_name") or None
        cols = int(message.get("cols") or 0)
        rows = int(message.get("rows") or 0)

        log_info(
            f"Starting terminal session for stack {stack_name}, "
            f"service {service_name}, container {container_name or '-'}"
        )

        try:
            container_id = await resolve_container(
                self._docker_client,
                stack_name,
                service_name,
                container_name,
                executor=self._manager.executor,
            )
        except ContainerResolutionError as e:
            log_error(f"Container lookup failed for stack {stack_name}, service {service_name}: {e}")
            await self._send_error("Container not found", str(e))
            return

        try:
            session = await self._manager.create_session(
                stack_name, service_name, container_id, cols, rows
            )
        except NoCompatibleShellError as e:
            await self._send_error("No compatible shell found in container", str(e))
            return
        except TerminalError as e:
            log_error(f"Failed to create terminal session for stack {stack_name}: {e}")
            await self._send_error("Failed to create terminal session", str(e))
            return

        self._session = session
        self.state = HandlerState.SESSION_ACTIVE

        session.set_close_callback(lambda exit_code: self._send_close(session.id, exit_code))
        session.set_output_callback(lambda data: self._send_output(session.id, data))

        self._log_session_created(stack_name, service_name, container_name, session.id)

        log_info(f"Terminal session {session.id} started")
        await self._send_json(messages.success_event("Terminal session started", session.id))

    async def _handle_input(self, message: dict) -> None:
        if self._session is None:
            await self._send_error("No active session")
            return

        try:
            check_contract(messages.INPUT_MESSAGE, message)
            data = messages.decode_bytes(message["input"])
        except ContractValidationError as e:
            await self._send_error("Invalid input event", e.message)
            return
        except ValueError as e:
            await self._send_error("Invalid input event", str(e))
            return

        if message["session_id"] != self._session.id:
            await self._send_error("Session ID mismatch")
            return

        try:
            await self._session.write(data)
        except TerminalError as e:
            await self._send_error("Failed to write to terminal", str(e))

    async def _handle_resize(self, message: dict) -> None:
        if self._session is None:
            await self._send_error("No active session")
            return

        try:
            check_contract(messages.RESIZE_MESSAGE, message)
        except ContractValidationError as e:
            await self._send_error("Invalid resize event", e.message)
            return

        if message["session_id"] != self._session.id:
            await self._send_error("Session ID mismatch")
            return

        try:
            await self._session.resize(int(message["cols"]), int(message["rows"]))
        except TerminalError as e:
            await self._send_error("Failed to resize terminal", str(e))

    async def _handle_close(self, message: dict) -> None:
        if self._session is not None:
            session_id = message.get("session_id")
            if session_id and session_id != self._session.id:
                await self._send_error("Session ID mismatch")
                return

            log_info(f"Client requested close of terminal session {self._session.id}")
            self._close_active_session()

        await asyncio.sleep(self._close_grace)
        self.state = HandlerState.CLOSED

    def _close_active_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        try:
            self._manager.close_session(session.id)
        except SessionNotFoundError:
            # Already gone: the shell exited on its own
            pass

    async def _send_output(self, session_id: str, data: bytes) -> None:
        await self._send_json(messages.output_event(session_id, data))

    async def _send_close(self, session_id: str, exit_code: int) -> None:
        await self._send_json(messages.close_event(session_id, exit_code))
        await self._close_connection()

    async def _send_error(self, error: str, context: str = "") -> None:
        await self._send_json(messages.error_event(error, context))

    async def _send_json(self, payload: dict) -> None:
        async with self._write_lock:
            if self._ws.closed:
                return
            try:
                await self._ws.send_json(payload)
            except (ConnectionError, RuntimeError) as e:
                log_debug(f"Failed to send {payload.get('type')} message: {e}")

    async def _close_connection(self) -> None:
        async with self._write_lock:
            if not self._ws.closed:
                await self._ws.close()

    def _log_session_created(self, stack_name, service_name, container_name, session_id) -> None:
        if self._audit_log is None:
            return

        entry = RequestLogEntry(
            method="WEBSOCKET",
            path=TERMINAL_PATH,
            stack_name=stack_name,
            container_name=container_name or "",
            auth_status=AUTH_STATUS_SUCCESS,
            status_code=200,
            metadata={
                "action": "terminal_session_created",
                "session_id": session_id,
                "service_name": service_name,
            },
        )
        if self._request is not None:
            entry.request_id = self._request.get("request_id", "")
            entry.source_ip = self._request.remote or ""
            entry.user_agent = self._request.headers.get("User-Agent", "")
            entry.auth_token_hash = self._request.get("auth_token_hash", "")

        self._audit_log.log_request(entry)
