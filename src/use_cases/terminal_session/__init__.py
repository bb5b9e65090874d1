"""
Terminal Session Use Case

Interactive shells inside stack containers via Docker exec: container
resolution with stack-label validation, shell probing, and the session
registry.
"""

from use_cases.terminal_session.container_resolver import (
    find_container_id,
    resolve_container,
    validate_container_stack,
)
from use_cases.terminal_session.session import TerminalSession
from use_cases.terminal_session.session_manager import (
    SHELL_CANDIDATES,
    TerminalSessionManager,
)

__all__ = [
    "SHELL_CANDIDATES",
    "TerminalSession",
    "TerminalSessionManager",
    "find_container_id",
    "resolve_container",
    "validate_container_stack",
]
