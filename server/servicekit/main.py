# ─────────────────────────────────────────────────────────────────────────────
# FastAPI Application Factory + Lifespan
# ─────────────────────────────────────────────────────────────────────────────
# Service builds its app through create_app(). Routes are added afterwards
# through Service.register()/use(), never directly on the app, so that every
# route passes through the request decorator.
# ─────────────────────────────────────────────────────────────────────────────

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from fastapi import FastAPI

from servicekit.exceptions import register_exception_handlers

if TYPE_CHECKING:
    from servicekit.service import Service

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown lifecycle.

    Logging is configured here at the latest; the response logger would
    otherwise configure it on the first request.
    """
    service: "Service" = app.state.service
    context = service.context
    context.logging.ensure()

    settings = context.settings
    logger.info(
        "service_starting",
        app=settings.app_name,
        private_routes=service.private_route_count,
        key_file_configured=context.key_store.is_configured,
        force_secure=settings.force_secure,
    )

    yield  # App is running, serving requests

    logger.info("service_stopped", app=settings.app_name)


def create_app(service: "Service") -> FastAPI:
    """Application factory for a Service.

    The service is stored in app.state so Depends() providers and the
    lifespan can reach its context without module globals.
    """
    settings = service.context.settings

    # No built-in docs routes: they would bypass the request decorator.
    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        openapi_url=None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.service = service

    # ── Exception handlers ───────────────────────────────────────────────────
    register_exception_handlers(app)

    return app
