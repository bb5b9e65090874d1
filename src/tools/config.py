"""
Agent configuration.

All settings come from the environment and are loaded once at startup.
The resulting AppConfig is passed to whatever needs it; nothing reads
os.environ after load_config() returns.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_PORT = 8081
DEFAULT_HOST = "0.0.0.0"
DEFAULT_LOG_DIR = "/var/log/berth-agent"
DEFAULT_AUDIT_LOG_FILE = "/var/log/berth-agent/requests.jsonl"
DEFAULT_MAX_SESSIONS = 64
MIN_TOKEN_LENGTH = 16

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_VALUES = ("1", "true", "yes", "on")


class ConfigError(Exception):
    """Raised when one or more settings are missing or invalid."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


@dataclass
class AppConfig:
    access_token: str
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    tls_cert_file: str = ""
    tls_key_file: str = ""
    log_level: str = "INFO"
    log_dir: str = DEFAULT_LOG_DIR
    audit_log_enabled: bool = False
    audit_log_file_path: str = DEFAULT_AUDIT_LOG_FILE
    terminal_max_sessions: int = DEFAULT_MAX_SESSIONS

    def is_https_enabled(self) -> bool:
        return bool(self.tls_cert_file) and bool(self.tls_key_file)


def _parse_int(environ, key, default, errors) -> int:
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{key} must be an integer (got {raw!r})")
        return default


def _parse_bool(raw: Optional[str]) -> bool:
    return raw is not None and raw.strip().lower() in _TRUE_VALUES


def load_config(environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build an AppConfig from environment variables.

    Args:
        environ: Mapping to read from, defaults to os.environ

    Returns:
        The validated AppConfig

    Raises:
        ConfigError: listing every invalid setting at once
    """
    if environ is None:
        environ = os.environ

    errors = []

    port = _parse_int(environ, "PORT", DEFAULT_PORT, errors)
    if not 0 < port <= 65535:
        errors.append(f"PORT must be between 1 and 65535 (got {port})")

    token = environ.get("TOKEN", "")
    if not token:
        errors.append("TOKEN is required")
    elif len(token) < MIN_TOKEN_LENGTH:
        errors.append(f"TOKEN must be at least {MIN_TOKEN_LENGTH} characters")

    log_level = (environ.get("LOG_LEVEL") or "INFO").upper()
    if log_level not in LOG_LEVELS:
        errors.append(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")

    max_sessions = _parse_int(
        environ, "TERMINAL_MAX_SESSIONS", DEFAULT_MAX_SESSIONS, errors
    )
    if max_sessions <= 0:
        errors.append("TERMINAL_MAX_SESSIONS must be positive")

    cert_file = environ.get("TLS_CERT_FILE", "")
    key_file = environ.get("TLS_KEY_FILE", "")
    if bool(cert_file) != bool(key_file):
        errors.append("TLS_CERT_FILE and TLS_KEY_FILE must be set together")

    if errors:
        raise ConfigError(errors)

    return AppConfig(
        access_token=token,
        port=port,
        host=environ.get("HOST") or DEFAULT_HOST,
        tls_cert_file=cert_file,
        tls_key_file=key_file,
        log_level=log_level,
        log_dir=environ.get("LOG_DIR") or DEFAULT_LOG_DIR,
        audit_log_enabled=_parse_bool(environ.get("AUDIT_LOG_ENABLED")),
        audit_log_file_path=environ.get("AUDIT_LOG_FILE_PATH")
        or DEFAULT_AUDIT_LOG_FILE,
        terminal_max_sessions=max_sessions,
    )
