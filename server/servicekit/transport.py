# ─────────────────────────────────────────────────────────────────────────────
# Transport Guard — HTTPS enforcement
# ─────────────────────────────────────────────────────────────────────────────
# requires_redirect() is consulted before authorization and before the route
# handler. ssl_options() runs once at startup and fails fast: a service that
# asked for TLS must never fall back to serving plaintext.
# ─────────────────────────────────────────────────────────────────────────────


from pathlib import Path
from typing import Any

import structlog
from starlette.datastructures import Headers
from starlette.types import Scope

from servicekit.config import TransportSettings
from servicekit.exceptions import MissingHostError, TransportCertUnreadableError

logger = structlog.get_logger(__name__)

_SECURE_SCHEMES = frozenset({"https", "wss"})


class TransportGuard:
    """Redirect insecure requests when ``force_secure`` is enabled."""

    def __init__(self, transport: TransportSettings | None):
        self._transport = transport

    @property
    def active(self) -> bool:
        return self._transport is not None and self._transport.force_secure

    def enforces(self, scheme: str) -> bool:
        """True when a request arriving over ``scheme`` must not be served."""
        return self.active and scheme not in _SECURE_SCHEMES

    def requires_redirect(
        self, scheme: str, host: str | None, path: str, query: str = ""
    ) -> str | None:
        """Return the https URL to redirect to, or None to continue.

        Raises MissingHostError when a redirect is required but there is no
        host to build it from.
        """
        if not self.enforces(scheme):
            return None
        if not host:
            raise MissingHostError(path)
        target = f"https://{host}{path}"
        if query:
            target = f"{target}?{query}"
        return target

    def redirect_for(self, scope: Scope) -> str | None:
        """requires_redirect() for an ASGI HTTP or WebSocket scope.

        The Host header is used verbatim; without one the address the
        server is bound to stands in.
        """
        headers = Headers(scope=scope)
        return self.requires_redirect(
            scope.get("scheme", "http"),
            headers.get("host") or _server_authority(scope.get("server")),
            scope["path"],
            scope.get("query_string", b"").decode("latin-1"),
        )

    def ssl_options(self) -> dict[str, Any]:
        """uvicorn TLS keyword arguments, validated for readability.

        Returns an empty dict when no certificates are configured.
        Raises TransportCertUnreadableError when they are configured but
        missing or unreadable.
        """
        if self._transport is None or not self._transport.has_certificates:
            if self.active:
                logger.warning("force_secure_without_certificates")
            return {}

        for path in (self._transport.cert_path, self._transport.key_path):
            _check_readable(path)

        logger.info("tls_enabled", cert_path=str(self._transport.cert_path))
        return {
            "ssl_certfile": str(self._transport.cert_path),
            "ssl_keyfile": str(self._transport.key_path),
        }


def _server_authority(server: tuple[str, int | None] | None) -> str | None:
    # unix sockets report (path, None)
    if not server or not server[0] or server[0].startswith("/"):
        return None
    host, port = server[0], server[1]
    if ":" in host:
        host = f"[{host}]"
    if port in (None, 80, 443):
        return host
    return f"{host}:{port}"


def _check_readable(path: Path) -> None:
    try:
        with open(path, "rb") as f:
            f.read(1)
    except OSError as e:
        raise TransportCertUnreadableError(str(path), e.strerror or type(e).__name__) from e
