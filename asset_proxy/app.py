from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import unquote

from litestar import Litestar, Request, Response, get, head, route
from litestar.enums import HttpMethod, MediaType
from litestar.handlers import asgi
from litestar.logging import LoggingConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from litestar.status_codes import HTTP_405_METHOD_NOT_ALLOWED

from .proxy import AssetProxy, method_not_allowed

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="asset_proxy", prefix="asset_proxy")


def request_path(scope: Scope) -> str:
    """Return the path the client asked for.

    The mount rewrites ``scope["path"]``: repeated slashes are collapsed and a
    trailing slash is appended. ``raw_path`` keeps the path as sent.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        path = unquote(raw_path.split(b"?", 1)[0].decode("latin-1"))
    else:
        path = scope.get("path", "/")
        if path != "/" and path.endswith("/"):
            path = path[:-1]
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def create_app(proxy: AssetProxy | None = None) -> Litestar:
    """Create the asset proxy ASGI application."""
    if proxy is None:
        proxy = AssetProxy.from_env()

    @get("/healthz", media_type=MediaType.TEXT, include_in_schema=False)
    async def healthz() -> str:
        return "OK"

    @head("/healthz", include_in_schema=False)
    async def healthz_head() -> None:
        return None

    @route(
        "/healthz",
        http_method=[
            HttpMethod.POST,
            HttpMethod.PUT,
            HttpMethod.PATCH,
            HttpMethod.DELETE,
            HttpMethod.OPTIONS,
        ],
        status_code=HTTP_405_METHOD_NOT_ALLOWED,
        include_in_schema=False,
    )
    async def healthz_other(request: Request) -> Response:
        return method_not_allowed(request.method)

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        response = await proxy.handle(request, request_path(scope))
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    logging_config = LoggingConfig(
        loggers={
            "asset_proxy": {
                "level": proxy.settings.python_log_level,
                "propagate": True,
            },
        },
    )

    return Litestar(
        route_handlers=[
            healthz_other,
            healthz,
            healthz_head,
            proxy_handler,
            PrometheusController,
        ],
        on_startup=[startup],
        on_shutdown=[shutdown],
        logging_config=logging_config,
        middleware=[prometheus_config.middleware],
    )


app = create_app()
