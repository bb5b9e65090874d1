"""
Terminal wire protocol.

Client -> agent:
    {"type": "terminal_start", "stack_name": "demo", "service_name": "web",
     "container_name": "demo-web-1", "cols": 80, "rows": 24}
    {"type": "terminal_input", "session_id": "...", "input": "<base64 bytes>"}
    {"type": "terminal_resize", "session_id": "...", "cols": 120, "rows": 40}
    {"type": "terminal_close", "session_id": "..."}

Agent -> client:
    {"type": "success", "message": "...", "session_id": "...", "timestamp": "..."}
    {"type": "terminal_output", "timestamp": "...", "session_id": "...", "output": "<base64 bytes>"}
    {"type": "terminal_close", "timestamp": "...", "session_id": "...", "exit_code": 0}
    {"type": "error", "timestamp": "...", "error": "...", "context": "..."}
"""

import base64
import binascii
from datetime import datetime, timezone
from tools.contract_validation import (
    NonEmptyStringType,
    NumberType,
    OptionalType,
    StringType,
)

TERMINAL_START = "terminal_start"
TERMINAL_INPUT = "terminal_input"
TERMINAL_RESIZE = "terminal_resize"
TERMINAL_CLOSE = "terminal_close"
TERMINAL_OUTPUT = "terminal_output"
ERROR = "error"
SUCCESS = "success"

START_MESSAGE = {
    "stack_name": NonEmptyStringType,
    "service_name": NonEmptyStringType,
    "container_name": OptionalType(StringType),
    "cols": OptionalType(NumberType),
    "rows": OptionalType(NumberType),
}

INPUT_MESSAGE = {
    "session_id": StringType,
    "input": StringType,
}

RESIZE_MESSAGE = {
    "session_id": StringType,
    "cols": NumberType,
    "rows": NumberType,
}


def timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def encode_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_bytes(value: str) -> bytes:
    """
    Decode a base64 payload from the client.

    Raises:
        ValueError: the value is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"input is not valid base64: {e}")


def output_event(session_id: str, data: bytes) -> dict:
    return {
        "type": TERMINAL_OUTPUT,
        "timestamp": timestamp(),
        "session_id": session_id,
        "output": encode_bytes(data),
    }


def close_event(session_id: str, exit_code: int) -> dict:
    return {
        "type": TERMINAL_CLOSE,
        "timestamp": timestamp(),
        "session_id": session_id,
        "exit_code": exit_code,
    }


def error_event(error: str, context: str = "") -> dict:
    return {
        "type": ERROR,
        "timestamp": timestamp(),
        "error": error,
        "context": context,
    }


def success_event(message: str, session_id: str) -> dict:
    return {
        "type": SUCCESS,
        "message": message,
        "session_id": session_id,
        "timestamp": timestamp(),
    }
