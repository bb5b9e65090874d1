"""
Request audit log.

Append-only JSON Lines sink for request and terminal-session records.
A disabled sink accepts entries and drops them, so callers never need
to check whether auditing is turned on.
"""

import hashlib
import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
from tools.logger import log_error, log_info

AUTH_STATUS_SUCCESS = "success"
AUTH_STATUS_FAILED = "failed"
AUTH_STATUS_NONE = "none"


def hash_token(token: str) -> str:
    """Short, non-reversible fingerprint of a bearer token for the logs."""
    if not token:
        return ""
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class RequestLogEntry:
    timestamp: str = field(default_factory=utc_timestamp)
    request_id: str = ""
    source_ip: str = ""
    method: str = ""
    path: str = ""
    user_agent: str = ""
    auth_status: str = AUTH_STATUS_NONE
    auth_error: str = ""
    auth_token_hash: str = ""
    status_code: int = 0
    latency_ms: float = 0.0
    error: str = ""
    stack_name: str = ""
    container_name: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        # Drop empty optional fields to keep lines short
        return {
            key: value
            for key, value in asdict(self).items()
            if value not in ("", {}) or key in ("auth_status", "status_code")
        }


class AuditLog:
    """
    Thread-safe JSON Lines writer.

    Args:
        enabled: When False every call is a no-op
        file_path: Target file, parent directories are created on open
    """

    def __init__(self, enabled: bool = False, file_path: Optional[str] = None):
        self.enabled = enabled and bool(file_path)
        self.file_path = file_path
        self._lock = threading.Lock()
        self._file = None

        if self.enabled:
            directory = os.path.dirname(file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            self._file = open(file_path, "a", encoding="utf-8")
            log_info(f"Audit log enabled at {file_path}")

    def log_request(self, entry: RequestLogEntry) -> None:
        if not self.enabled:
            return

        line = json.dumps(entry.to_dict(), separators=(",", ":"))
        with self._lock:
            if self._file is None:
                return
            try:
                self._file.write(line + "\n")
                self._file.flush()
            except OSError as e:
                log_error(f"Failed to write audit log entry: {e}")

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
