# ─────────────────────────────────────────────────────────────────────────────
# Dependency Injection — FastAPI Depends() providers
# ─────────────────────────────────────────────────────────────────────────────
# State flows: Service builds the context → app.state stores → Depends()
# injects. Handlers never reach for module globals.
# ─────────────────────────────────────────────────────────────────────────────


from fastapi import Request

from servicekit.config import Settings
from servicekit.context import ServiceContext


def get_service_context(request: Request) -> ServiceContext:
    """Inject the ServiceContext into endpoints via Depends()."""
    return request.app.state.service.context


def get_settings_dep(request: Request) -> Settings:
    """Inject Settings into endpoints via Depends()."""
    return get_service_context(request).settings
