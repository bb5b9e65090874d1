from aiohttp import web
from tools.audit_log import AuditLog
from tools.config import AppConfig
from use_cases.terminal_session import TerminalSessionManager

CONFIG = web.AppKey("config", AppConfig)
DOCKER_CLIENT = web.AppKey("docker_client", object)
AUDIT_LOG = web.AppKey("audit_log", AuditLog)
TERMINAL_MANAGER = web.AppKey("terminal_manager", TerminalSessionManager)
