from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar import Litestar, Request
from litestar.handlers import asgi
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .proxy import FileProxy

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="file_proxy", prefix="file_proxy")


def create_app(proxy: FileProxy | None = None) -> Litestar:
    """Create the file proxy ASGI application.

    CORS is answered by the proxy itself from its allow-list, so Litestar's
    CORS middleware is not configured. ``/metrics`` is only routed when
    metrics are enabled; otherwise it is a 404 like any other unknown path.
    """
    if proxy is None:
        proxy = FileProxy.from_env()

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        path = scope.get("path", "/")
        if not path.startswith("/"):
            path = f"/{path}"
        if path != "/" and path.endswith("/"):
            path = path.rstrip("/") or "/"
        response = await proxy.handle(request, path)
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    route_handlers: list[Any] = [proxy_handler]
    middleware: list[Any] = []
    if proxy.settings.metrics_enabled:
        route_handlers.append(PrometheusController)
        middleware.append(prometheus_config.middleware)

    return Litestar(
        route_handlers=route_handlers,
        on_startup=[startup],
        on_shutdown=[shutdown],
        middleware=middleware,
    )


app = create_app()
