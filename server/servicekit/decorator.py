# ─────────────────────────────────────────────────────────────────────────────
# Request Decorator — transport check → authorization → handler → log
# ─────────────────────────────────────────────────────────────────────────────
# Each registered route's ASGI app is wrapped before it reaches the router.
# Per request:
#
#   START → TRANSPORT_CHECK → REDIRECTED | REJECTED
#                           → AUTH_CHECK → DENIED
#                                        → INVOKED → RESPONSE_SENT
#
# Completion is observed on the ASGI send channel: the request is logged
# when the final http.response.body message has been handed to the server,
# not when the handler returns. Disconnects and unhandled errors still
# produce exactly one log line.
#
# WebSocket handshakes go through the same checks. They cannot be
# redirected or given a JSON body, so any refusal closes the handshake
# with 1008, which the server answers with a 403.
# ─────────────────────────────────────────────────────────────────────────────


import enum
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl

import structlog
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from servicekit.auth import Verdict
from servicekit.context import ServiceContext
from servicekit.exceptions import MissingHostError
from servicekit.request_log import RequestContext

logger = structlog.get_logger(__name__)

DENIAL_MESSAGE = "Missing proper authorization."
REDIRECT_STATUS = 302
REJECT_STATUS = 400
WS_POLICY_VIOLATION = 1008
WS_REFUSED_STATUS = 403

_DECORATED_SCOPES = frozenset({"http", "websocket"})
_BODY_MESSAGE_TYPES = frozenset({"http.response.body", "websocket.http.response.body"})
_FINAL_MESSAGE_TYPES = frozenset({"http.response.pathsend", "websocket.close"})
_PARSEABLE_TYPES = frozenset({"application/json", "application/x-www-form-urlencoded"})


class RequestState(enum.Enum):
    START = "start"
    TRANSPORT_CHECK = "transport_check"
    REDIRECTED = "redirected"
    REJECTED = "rejected"
    AUTH_CHECK = "auth_check"
    DENIED = "denied"
    INVOKED = "invoked"
    RESPONSE_SENT = "response_sent"


@dataclass(frozen=True)
class RouteOptions:
    """Per-route registration options.

    ``minify`` is a hint for static-asset mounts; the decorator records it
    but does not act on it.
    """

    private: bool = False
    minify: bool = False


class Action(enum.Enum):
    CONTINUE = "continue"
    REDIRECT = "redirect"
    REJECT = "reject"
    DENY = "deny"


@dataclass(frozen=True)
class Decision:
    action: Action
    location: str | None = None
    verdict: Verdict | None = None
    message: str | None = None

    @classmethod
    def proceed(cls) -> "Decision":
        return cls(Action.CONTINUE)

    @classmethod
    def redirect(cls, location: str) -> "Decision":
        return cls(Action.REDIRECT, location=location)

    @classmethod
    def reject(cls, message: str) -> "Decision":
        return cls(Action.REJECT, message=message)

    @classmethod
    def deny(cls, verdict: Verdict) -> "Decision":
        return cls(Action.DENY, verdict=verdict)


# ── Body parsing ────────────────────────────────────────────────────────────


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def _is_parseable(content_type: str) -> bool:
    media_type = _media_type(content_type)
    return media_type in _PARSEABLE_TYPES or media_type.endswith("+json")


def parse_body(raw: bytes, content_type: str) -> Any:
    """Parse a JSON or urlencoded body; anything else yields None."""
    if not raw:
        return None
    media_type = _media_type(content_type)
    if media_type == "application/json" or media_type.endswith("+json"):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    if media_type == "application/x-www-form-urlencoded":
        return dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
    return None


def body_credential(body: Any, field: str) -> str | None:
    if isinstance(body, dict):
        value = body.get(field)
        if isinstance(value, str):
            return value
    return None


# ── Per-request exchange ────────────────────────────────────────────────────


class _Exchange:
    """Wraps one request's receive/send channels.

    Buffers a parseable body so it can be inspected for credentials and then
    replayed to the handler, records the response status, and fires
    ``on_complete`` once the final body message has been sent.
    """

    def __init__(
        self,
        context: RequestContext,
        receive: Receive,
        send: Send,
        on_complete: Callable[[], Any],
    ):
        self.context = context
        self.state = RequestState.START
        self._receive = receive
        self._send = send
        self._on_complete = on_complete
        self._buffered: list[Message] = []
        self.response_started = False

    async def read_body(self) -> None:
        """Buffer the request body when it is JSON or urlencoded."""
        content_type = self.context.headers.get("content-type", "")
        if not _is_parseable(content_type):
            return

        chunks: list[bytes] = []
        while True:
            message = await self._receive()
            if message["type"] == "http.disconnect":
                self.context.client_disconnected = True
                self._buffered.append(message)
                return
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break

        raw = b"".join(chunks)
        self._buffered.append({"type": "http.request", "body": raw, "more_body": False})
        self.context.body = parse_body(raw, content_type)

    async def receive(self) -> Message:
        if self._buffered:
            return self._buffered.pop(0)
        message = await self._receive()
        if message["type"] == "http.disconnect" and self.state is not RequestState.RESPONSE_SENT:
            self.context.client_disconnected = True
        return message

    async def send(self, message: Message) -> None:
        message_type = message["type"]
        if message_type in ("http.response.start", "websocket.http.response.start"):
            self.context.status_code = message["status"]
            self.response_started = True
        elif message_type == "websocket.accept":
            self.context.status_code = 101
            self.response_started = True
        elif message_type == "websocket.close" and not self.response_started:
            self.context.status_code = WS_REFUSED_STATUS
            self.response_started = True

        try:
            await self._send(message)
        except OSError:
            self.context.client_disconnected = True
            raise

        if self._is_final(message):
            self.state = RequestState.RESPONSE_SENT
            self._on_complete()

    @staticmethod
    def _is_final(message: Message) -> bool:
        if message["type"] in _BODY_MESSAGE_TYPES:
            return not message.get("more_body", False)
        return message["type"] in _FINAL_MESSAGE_TYPES

    async def respond(self, scope: Scope, response: Response) -> None:
        await response(scope, self.receive, self.send)

    async def refuse_websocket(self) -> None:
        await self.send({"type": "websocket.close", "code": WS_POLICY_VIOLATION})


# ── Decorator ───────────────────────────────────────────────────────────────


class RequestDecorator:
    """Wrap route ASGI apps with transport, authorization and logging.

    ``context_provider`` returns the ServiceContext in force for the current
    request, so routes registered before configuration is final still see
    the settings the service eventually listens with.
    """

    def __init__(self, context_provider: Callable[[], ServiceContext]):
        self._context_provider = context_provider

    def wrap(self, app: ASGIApp, options: RouteOptions) -> ASGIApp:
        async def decorated(scope: Scope, receive: Receive, send: Send) -> None:
            if scope["type"] not in _DECORATED_SCOPES:
                await app(scope, receive, send)
                return
            await self.handle(app, options, scope, receive, send)

        decorated.route_options = options  # type: ignore[attr-defined]
        decorated.wrapped_app = app  # type: ignore[attr-defined]
        return decorated

    async def decide(
        self,
        service: ServiceContext,
        options: RouteOptions,
        scope: Scope,
        exchange: _Exchange,
    ) -> Decision:
        """Run the transport and authorization checks for one request."""
        exchange.state = RequestState.TRANSPORT_CHECK
        try:
            location = service.transport_guard.redirect_for(scope)
        except MissingHostError as e:
            return Decision.reject(e.message)
        if location is not None:
            return Decision.redirect(location)

        if scope["type"] == "http":
            await exchange.read_body()

        # A disconnected client is never invoked; handle() stops on the flag.
        if not options.private or exchange.context.client_disconnected:
            return Decision.proceed()

        exchange.state = RequestState.AUTH_CHECK
        context = exchange.context
        verdict = await service.authorizer.authorize(
            context.headers.get("authorization"),
            body_credential(context.body, service.settings.body_credential_field),
        )
        if verdict.allowed:
            return Decision.proceed()
        return Decision.deny(verdict)

    async def handle(
        self,
        app: ASGIApp,
        options: RouteOptions,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        service = self._context_provider()
        context = RequestContext.from_scope(scope)
        exchange = _Exchange(
            context,
            receive,
            send,
            on_complete=lambda: service.response_logger.log_completion(context),
        )

        try:
            decision = await self.decide(service, options, scope, exchange)

            if context.client_disconnected:
                return

            if decision.action is Action.CONTINUE:
                exchange.state = RequestState.INVOKED
                await app(scope, exchange.receive, exchange.send)
            else:
                await self._short_circuit(scope, exchange, decision)
        except Exception:
            # The server-error layer above the router answers with a 500.
            if not exchange.response_started:
                context.status_code = 500
            raise
        finally:
            # Disconnects and handlers that never finish their response
            # still get their one log line here.
            service.response_logger.log_completion(context)

    async def _short_circuit(self, scope: Scope, exchange: _Exchange, decision: Decision) -> None:
        context = exchange.context
        if decision.action is Action.REDIRECT:
            exchange.state = RequestState.REDIRECTED
            logger.debug("transport_redirect", location=decision.location)
            response: Response = RedirectResponse(decision.location, status_code=REDIRECT_STATUS)
        elif decision.action is Action.REJECT:
            exchange.state = RequestState.REJECTED
            logger.warning("transport_rejected", method=context.method, path=context.path)
            response = JSONResponse({"message": decision.message}, status_code=REJECT_STATUS)
        else:
            exchange.state = RequestState.DENIED
            logger.warning(
                "authorization_denied",
                method=context.method,
                path=context.path,
                verdict=decision.verdict.value,
            )
            response = JSONResponse({"message": DENIAL_MESSAGE}, status_code=403)

        if scope["type"] == "websocket":
            await exchange.refuse_websocket()
        else:
            await exchange.respond(scope, response)
