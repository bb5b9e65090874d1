from aiohttp import web
from controllers import app_keys

HEALTH_PATH = "/api/health"


async def handle_health(request: web.Request) -> web.Response:
    manager = request.app[app_keys.TERMINAL_MANAGER]
    return web.json_response(
        {"status": "ok", "terminal_sessions": manager.session_count()}
    )


def init(app: web.Application) -> None:
    app.router.add_get(HEALTH_PATH, handle_health)
