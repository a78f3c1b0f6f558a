# ─────────────────────────────────────────────────────────────────────────────
# Response Logger — one structured line per request, final status included
# ─────────────────────────────────────────────────────────────────────────────
# The request decorator calls log_completion() once the last body message
# has been handed to the server, so the status logged is the one the client
# actually received. RequestContext.logged makes the call idempotent.
# ─────────────────────────────────────────────────────────────────────────────


import json
from dataclasses import dataclass, field
from typing import Any

import structlog
from starlette.datastructures import Headers
from starlette.types import Scope

from servicekit.logging_config import LoggingSetup

logger = structlog.get_logger(__name__)

STATUS_CLIENT_DISCONNECTED = 499

_LOOPBACK_ALIASES = frozenset({"::1", "::ffff:127.0.0.1"})


@dataclass
class RequestContext:
    """Per-request state shared by the decorator and the response logger."""

    method: str
    path: str
    query_string: str
    client_host: str | None
    headers: Headers
    body: Any = None
    status_code: int | None = None
    client_disconnected: bool = False
    logged: bool = field(default=False, init=False)

    @classmethod
    def from_scope(cls, scope: Scope) -> "RequestContext":
        client = scope.get("client")
        return cls(
            method=scope.get("method", "GET"),
            path=scope["path"],
            query_string=scope.get("query_string", b"").decode("latin-1"),
            client_host=client[0] if client else None,
            headers=Headers(scope=scope),
        )

    @property
    def url(self) -> str:
        """Original path plus query string."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path


def normalize_client(host: str | None, *, normalize_loopback: bool = True) -> str:
    """Client address for display; loopback variants collapse to 127.0.0.1."""
    if not host:
        return "-"
    if normalize_loopback and host in _LOOPBACK_ALIASES:
        return "127.0.0.1"
    return host


def forwarded_client(headers: Headers) -> str | None:
    """First address in X-Forwarded-For, the client the proxy saw."""
    forwarded = headers.get("x-forwarded-for", "")
    first = forwarded.split(",", 1)[0].strip()
    return first or None


def serialize_body(body: Any, redact: frozenset[str] = frozenset()) -> str | None:
    """JSON form of a parsed request body, or None when it is empty.

    Top-level fields named in ``redact`` are masked.
    """
    if not body:
        return None
    if redact and isinstance(body, dict):
        body = {k: ("***" if k in redact else v) for k, v in body.items()}
    try:
        return json.dumps(body, separators=(",", ":"), sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(body)


class ResponseLogger:
    """Emit the ``request_completed`` log line for a request, exactly once."""

    def __init__(
        self,
        app_name: str,
        logging_setup: LoggingSetup,
        *,
        normalize_loopback: bool = True,
        log_forwarded_for: bool = False,
        redact_fields: frozenset[str] = frozenset(),
    ):
        self._app_name = app_name
        self._logging_setup = logging_setup
        self._normalize_loopback = normalize_loopback
        self._log_forwarded_for = log_forwarded_for
        self._redact_fields = redact_fields

    def client_of(self, context: RequestContext) -> str:
        host = context.client_host
        if self._log_forwarded_for:
            host = forwarded_client(context.headers) or host
        return normalize_client(host, normalize_loopback=self._normalize_loopback)

    def log_completion(self, context: RequestContext) -> bool:
        """Log the request; returns False if it had already been logged."""
        if context.logged:
            return False
        context.logged = True

        self._logging_setup.ensure()

        status = STATUS_CLIENT_DISCONNECTED if context.client_disconnected else context.status_code
        client = self.client_of(context)
        body = serialize_body(context.body, self._redact_fields)

        parts = [f"[{self._app_name}]", str(status), context.method, context.url]
        if body is not None:
            parts.append(body)
        parts.append(client)

        fields: dict[str, Any] = {
            "app": self._app_name,
            "status": status,
            "method": context.method,
            "url": context.url,
            "client": client,
            "line": " ".join(parts),
        }
        if body is not None:
            fields["body"] = body
        if context.client_disconnected:
            fields["client_disconnected"] = True
            fields["response_status"] = context.status_code

        logger.info("request_completed", **fields)
        return True
