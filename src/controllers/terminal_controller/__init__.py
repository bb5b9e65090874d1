"""
Terminal Controller

Registers the WebSocket route that gives clients an interactive shell in
a stack container. Authentication is enforced by the app middleware
before the upgrade handler runs.
"""

from aiohttp import web
from controllers import app_keys
from controllers.terminal_controller.keepalive import PONG_WAIT
from controllers.terminal_controller.protocol_handler import (
    TERMINAL_PATH,
    HandlerState,
    TerminalProtocolHandler,
)
from tools.logger import log_info, log_warning


async def handle_terminal_websocket(request: web.Request) -> web.StreamResponse:
    source_ip = request.remote
    log_info(
        f"New WebSocket connection for terminal from {source_ip} "
        f"({request.headers.get('User-Agent', '')})"
    )

    ws = web.WebSocketResponse(receive_timeout=PONG_WAIT, autoping=True)
    if not ws.can_prepare(request).ok:
        log_warning(f"Terminal request from {source_ip} is not a WebSocket upgrade")
        return web.json_response({"error": "WebSocket upgrade required"}, status=400)

    await ws.prepare(request)

    handler = TerminalProtocolHandler(
        ws,
        request.app[app_keys.TERMINAL_MANAGER],
        request.app[app_keys.DOCKER_CLIENT],
        audit_log=request.app[app_keys.AUDIT_LOG],
        request=request,
    )
    await handler.run()

    log_info(f"Terminal WebSocket connection from {source_ip} closed")
    return ws


def init(app: web.Application) -> None:
    """Register the terminal route on the application."""
    log_info(f"Registering terminal route: {TERMINAL_PATH}")
    app.router.add_get(TERMINAL_PATH, handle_terminal_websocket)


__all__ = [
    "HandlerState",
    "TerminalProtocolHandler",
    "TERMINAL_PATH",
    "handle_terminal_websocket",
    "init",
]
