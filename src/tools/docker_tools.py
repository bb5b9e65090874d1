import threading
import docker
import requests
from tools.logger import log_info

## Labels written by docker compose on every container it manages
STACK_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"

## Failures the SDK can raise while talking to the daemon
DOCKER_ERRORS = (docker.errors.DockerException, requests.exceptions.RequestException)

_client = None
_client_lock = threading.Lock()


def get_docker_client() -> docker.DockerClient:
    """
    Return the process-wide Docker client, creating it on first use.

    The client is built lazily so that importing this module never
    talks to the daemon.
    """
    global _client
    with _client_lock:
        if _client is None:
            _client = docker.from_env()
            log_info("Docker client initialised from environment")
        return _client


def compose_label_filters(stack_name: str, service_name: str) -> list:
    return [
        f"{STACK_LABEL}={stack_name}",
        f"{SERVICE_LABEL}={service_name}",
    ]


def socket_of(exec_socket):
    """
    Unwrap the raw socket from the object returned by exec_start(socket=True).

    Plain connections return a SocketIO wrapper exposing ``_sock``; TLS and
    some transports hand back the socket directly.
    """
    return getattr(exec_socket, "_sock", exec_socket)


def short_id(identifier: str) -> str:
    return identifier[:12] if identifier else ""
