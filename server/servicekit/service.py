# ─────────────────────────────────────────────────────────────────────────────
# Service — route registration and server startup
# ─────────────────────────────────────────────────────────────────────────────
# Usage:
#
#   service = Service(Settings(app_name="Docs", key_file_path="keys.enc"))
#
#   @service.get("/ping")
#   async def ping():
#       return {"ok": True}
#
#   @service.post("/data", private=True)
#   async def data(request: Request):
#       ...
#
#   service.use("/static", StaticFiles(directory="public"), minify=True)
#   service.listen(8080)
# ─────────────────────────────────────────────────────────────────────────────


import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog
import uvicorn
from fastapi.routing import APIRoute
from fastapi.templating import Jinja2Templates
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from servicekit.config import Settings, get_settings
from servicekit.context import ServiceContext
from servicekit.decorator import RequestDecorator, RouteOptions
from servicekit.exceptions import ConfigurationLockedError
from servicekit.main import create_app

logger = structlog.get_logger(__name__)

SUPPORTED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
USE = "USE"

_STARTUP_POLL_SECONDS = 0.05


class DecoratedRoute(APIRoute):
    """APIRoute whose ASGI app runs through a RequestDecorator.

    The 405 for a matching path with the wrong method is decorated too, so
    it is redirected, authorized and logged like any other response.
    """

    def __init__(
        self,
        path: str,
        endpoint: Callable[..., Any],
        *,
        options: RouteOptions,
        decorator: RequestDecorator,
        **kwargs: Any,
    ) -> None:
        super().__init__(path, endpoint, **kwargs)
        self.options = options
        self.app = decorator.wrap(self.app, options)
        self._method_not_allowed = decorator.wrap(self._reject_method, options)

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        if self.methods and scope["method"] not in self.methods:
            await self._method_not_allowed(scope, receive, send)
        else:
            await self.app(scope, receive, send)

    async def _reject_method(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = JSONResponse(
            {"detail": "Method Not Allowed"},
            status_code=405,
            headers={"Allow": ", ".join(sorted(self.methods))},
        )
        await response(scope, receive, send)


class Service:
    """A FastAPI application whose routes are all decorated.

    Configuration may be replaced with configure() (or by passing settings
    to listen()) until the service starts listening; after that it is
    locked for the life of the process.
    """

    def __init__(self, settings: Settings | None = None):
        self._context = ServiceContext.from_settings(settings or get_settings())
        self._decorator = RequestDecorator(lambda: self._context)
        self._templates: Jinja2Templates | None = None
        self._listening = False
        self._private_routes = 0
        self.app = create_app(self)

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def context(self) -> ServiceContext:
        return self._context

    @property
    def settings(self) -> Settings:
        return self._context.settings

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def private_route_count(self) -> int:
        return self._private_routes

    def configure(self, settings: Settings) -> None:
        """Replace the configuration. Only allowed before listening."""
        if self._listening:
            raise ConfigurationLockedError()
        self._context = ServiceContext.from_settings(settings)
        self._templates = None
        self.app.title = settings.app_name

    # ── Route registration ───────────────────────────────────────────────────

    def register(
        self,
        method: str,
        path: str,
        handler: Any,
        *,
        private: bool = False,
        minify: bool = False,
    ) -> Any:
        """Register ``handler`` for ``method`` on ``path``.

        ``method`` is one of GET, POST, PUT, DELETE, PATCH, or USE. For USE
        the handler is an ASGI app mounted under ``path``.
        """
        method = method.upper()
        if method == USE:
            self.use(path, handler, private=private, minify=minify)
            return handler
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported method '{method}'. Expected one of {SUPPORTED_METHODS + (USE,)}")

        options = RouteOptions(private=private, minify=minify)
        self.app.router.add_api_route(
            path,
            handler,
            methods=[method],
            route_class_override=functools.partial(
                DecoratedRoute, options=options, decorator=self._decorator
            ),
        )
        self._count(options)
        logger.debug("route_registered", method=method, path=path, private=private)
        return handler

    def use(self, path: str, app: ASGIApp, *, private: bool = False, minify: bool = False) -> None:
        """Mount an ASGI app (sub-application, static files) under ``path``."""
        options = RouteOptions(private=private, minify=minify)
        self.app.mount(path.rstrip("/"), self._decorator.wrap(app, options))
        self._count(options)
        logger.debug("app_mounted", path=path, private=private, minify=minify)

    def route(self, method: str, path: str, *, private: bool = False, minify: bool = False):
        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            return self.register(method, path, handler, private=private, minify=minify)

        return decorator

    def get(self, path: str, **options: Any):
        return self.route("GET", path, **options)

    def post(self, path: str, **options: Any):
        return self.route("POST", path, **options)

    def put(self, path: str, **options: Any):
        return self.route("PUT", path, **options)

    def delete(self, path: str, **options: Any):
        return self.route("DELETE", path, **options)

    def patch(self, path: str, **options: Any):
        return self.route("PATCH", path, **options)

    def _count(self, options: RouteOptions) -> None:
        if options.private:
            self._private_routes += 1

    # ── Views ────────────────────────────────────────────────────────────────

    def render(
        self,
        request: Request,
        template: str,
        context: dict[str, Any] | None = None,
        status_code: int = 200,
    ) -> Response:
        """Render a Jinja2 template from the configured view directory."""
        if self._templates is None:
            view_directory = self.settings.view_directory
            if view_directory is None:
                raise RuntimeError("view_directory is not configured")
            self._templates = Jinja2Templates(directory=str(view_directory))
        return self._templates.TemplateResponse(
            request, template, context or {}, status_code=status_code
        )

    # ── Serving ──────────────────────────────────────────────────────────────

    async def serve(
        self,
        port: int,
        settings: Settings | None = None,
        *,
        host: str = "0.0.0.0",
        on_listening: Callable[[], Any] | None = None,
    ) -> None:
        """Serve until shut down; ``on_listening`` fires once sockets are bound.

        Raises TransportCertUnreadableError before binding anything when TLS
        is configured but its files cannot be read.
        """
        if settings is not None:
            self.configure(settings)

        context = self._context
        ssl_options = context.transport_guard.ssl_options()
        context.logging.ensure()
        self._listening = True

        configs = [uvicorn.Config(self.app, host=host, port=port, log_config=None, **ssl_options)]
        if ssl_options and context.settings.force_secure:
            # Plain-HTTP listener whose requests the transport guard redirects.
            configs.append(
                uvicorn.Config(
                    self.app,
                    host=host,
                    port=context.settings.transport.redirect_port,
                    log_config=None,
                    lifespan="off",
                )
            )

        servers = [uvicorn.Server(config) for config in configs]
        tasks = [asyncio.create_task(server.serve()) for server in servers]

        while not all(server.started for server in servers):
            if any(task.done() for task in tasks):
                break
            await asyncio.sleep(_STARTUP_POLL_SECONDS)
        else:
            logger.info(
                "service_listening",
                app=context.settings.app_name,
                ports=[config.port for config in configs],
                tls=bool(ssl_options),
            )
            if on_listening is not None:
                on_listening()

        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for server in servers:
            server.should_exit = True
        await asyncio.gather(*tasks)

    def listen(
        self,
        port: int,
        settings: Settings | None = None,
        *,
        host: str = "0.0.0.0",
        on_listening: Callable[[], Any] | None = None,
    ) -> None:
        """Blocking form of serve()."""
        asyncio.run(self.serve(port, settings, host=host, on_listening=on_listening))
