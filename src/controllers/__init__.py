from aiohttp import web
from tools.audit_log import AuditLog
from tools.docker_tools import get_docker_client
from tools.logger import *
from use_cases.terminal_session import TerminalSessionManager
from . import app_keys, health, terminal_controller
from .middleware import request_logging_middleware, token_auth_middleware


def create_app(config, docker_client=None, audit_log=None, terminal_manager=None) -> web.Application:
    """
    Build the agent's HTTP application.

    One TerminalSessionManager is created here and shared by every
    connection; it is shut down with the application.
    """
    log_info("Initializing HTTP application...")

    if docker_client is None:
        docker_client = get_docker_client()
    if audit_log is None:
        audit_log = AuditLog(config.audit_log_enabled, config.audit_log_file_path)
    if terminal_manager is None:
        terminal_manager = TerminalSessionManager(
            docker_client, max_sessions=config.terminal_max_sessions
        )

    app = web.Application(
        middlewares=[
            request_logging_middleware(audit_log),
            token_auth_middleware(config.access_token),
        ]
    )
    app[app_keys.CONFIG] = config
    app[app_keys.DOCKER_CLIENT] = docker_client
    app[app_keys.AUDIT_LOG] = audit_log
    app[app_keys.TERMINAL_MANAGER] = terminal_manager

    health.init(app)
    terminal_controller.init(app)

    app.on_shutdown.append(_shutdown_terminals)
    app.on_cleanup.append(_close_audit_log)

    log_info("HTTP application initialized successfully.")
    return app


async def _shutdown_terminals(app: web.Application) -> None:
    await app[app_keys.TERMINAL_MANAGER].shutdown()


async def _close_audit_log(app: web.Application) -> None:
    app[app_keys.AUDIT_LOG].close()
