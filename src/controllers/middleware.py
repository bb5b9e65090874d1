"""
HTTP middlewares: bearer-token authentication and request audit logging.
"""

import hmac
import time
import uuid
from aiohttp import web
from tools.audit_log import (
    AUTH_STATUS_FAILED,
    AUTH_STATUS_NONE,
    AUTH_STATUS_SUCCESS,
    RequestLogEntry,
    hash_token,
)
from tools.logger import log_debug, log_info, log_warning

REQUEST_ID_HEADER = "X-Request-ID"
PROTECTED_PREFIXES = ("/api", "/ws")
UNLOGGED_PATHS = ("/api/health",)


def _set_auth_failure(request: web.Request, reason: str) -> None:
    request["auth_status"] = AUTH_STATUS_FAILED
    request["auth_error"] = reason


def token_auth_middleware(access_token: str, protected_prefixes=PROTECTED_PREFIXES):
    """
    Require ``Authorization: Bearer <token>`` on every protected path.
    """

    @web.middleware
    async def middleware(request: web.Request, handler):
        if not request.path.startswith(protected_prefixes):
            return await handler(request)

        source_ip = request.remote

        if not access_token:
            _set_auth_failure(request, "Access token not configured")
            log_warning(f"Authentication failed for {source_ip}: token not configured")
            return web.json_response({"error": "Access token not configured"}, status=500)

        auth = request.headers.get("Authorization", "")
        if not auth:
            _set_auth_failure(request, "Authorization header required")
            log_warning(f"Authentication failed for {source_ip}: missing authorization header")
            return web.json_response({"error": "Authorization header required"}, status=401)

        if not auth.startswith("Bearer "):
            _set_auth_failure(request, "Bearer token required")
            log_warning(f"Authentication failed for {source_ip}: invalid authorization format")
            return web.json_response({"error": "Bearer token required"}, status=401)

        token = auth[len("Bearer "):]
        token_hash = hash_token(token)
        log_debug(f"Validating token {token_hash} from {source_ip}")

        if not hmac.compare_digest(token.encode("utf-8"), access_token.encode("utf-8")):
            _set_auth_failure(request, "Invalid token")
            log_warning(f"Authentication failed for {source_ip}: invalid token {token_hash}")
            return web.json_response({"error": "Invalid token"}, status=401)

        request["auth_status"] = AUTH_STATUS_SUCCESS
        request["auth_token_hash"] = token_hash
        log_info(f"Authentication successful for {source_ip} ({request.path})")
        return await handler(request)

    return middleware


def request_logging_middleware(audit_log):
    """
    Tag each request with an X-Request-ID and record it in the audit log.
    """

    @web.middleware
    async def middleware(request: web.Request, handler):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request["request_id"] = request_id

        if not audit_log.enabled or request.path in UNLOGGED_PATHS:
            response = await handler(request)
            if not response.prepared:
                response.headers[REQUEST_ID_HEADER] = request_id
            return response

        start = time.monotonic()
        entry = RequestLogEntry(
            request_id=request_id,
            source_ip=request.remote or "",
            method=request.method,
            path=request.path,
            user_agent=request.headers.get("User-Agent", ""),
        )

        try:
            response = await handler(request)
        except web.HTTPException as e:
            entry.status_code = e.status
            entry.error = e.reason
            raise
        except Exception as e:
            entry.status_code = 500
            entry.error = str(e)
            raise
        else:
            entry.status_code = response.status
            if not response.prepared:
                response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            entry.latency_ms = round((time.monotonic() - start) * 1000.0, 3)
            entry.auth_status = request.get("auth_status", AUTH_STATUS_NONE)
            entry.auth_error = request.get("auth_error", "")
            entry.auth_token_hash = request.get("auth_token_hash", "")
            audit_log.log_request(entry)

    return middleware
