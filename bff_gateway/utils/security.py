import re
import secrets

import anyio
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import HTTPConnection, Request

from ..auth.rate_limiter import RateLimiterRegistry, classify_request, get_client_ip
from ..config import GatewaySettings
from ..logging_util import get_logger, set_correlation_id
from ..sessions import CSRF_TOKEN_KEY, Session, build_cookie
from .exceptions import CSRFTokenInvalid, RateLimited, error_body

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._\-]{1,128}$")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class BodyTooLargeException(Exception):
    """Internal exception for flow control."""
    pass


async def _send_json(scope: Scope, receive: Receive, send: Send, status_code: int, error: str,
                     message: str, headers: dict | None = None) -> None:
    request = Request(scope)
    response = JSONResponse(
        status_code=status_code,
        content=error_body(request, status_code, error, message),
        headers=headers,
    )
    await response(scope, receive, send)


class CorrelationIdMiddleware:
    """
    Binds a correlation id to the request: the inbound X-Request-ID when it
    looks sane, otherwise a fresh one. Echoed on the response.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        inbound = Headers(scope=scope).get(REQUEST_ID_HEADER)
        correlation_id = set_correlation_id(inbound if inbound and _REQUEST_ID_RE.match(inbound) else None)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = correlation_id
            await send(message)

        await self.app(scope, receive, send_wrapper)


class MaxBodySizeMiddleware:
    """
    Enforces a maximum request body size for HTTP requests.

    Limits are enforced as the downstream app reads from `receive()`, so a
    proxied upload is cut off before it is buffered in full.
    """

    def __init__(
        self,
        app: ASGIApp,
        max_body_size: int = 10_000_000,
        drain_timeout_seconds: float = 1.0,
    ):
        self.app = app
        self.max_body_size = max_body_size
        self.drain_timeout_seconds = drain_timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        content_length = headers.get("content-length")

        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        async def reject(message: str, status_code: int = 413) -> None:
            await self._drain_body(receive)

            async def final_dummy_receive():
                return {"type": "http.request", "body": b"", "more_body": False}

            await _send_json(
                scope, final_dummy_receive, send, status_code,
                "PAYLOAD_TOO_LARGE" if status_code == 413 else "BAD_REQUEST",
                message, headers={"Connection": "close"},
            )

        if content_length is not None:
            try:
                if int(content_length) > self.max_body_size:
                    await reject("Content-Length too large")
                    return
            except ValueError:
                await reject("Invalid Content-Length", status_code=400)
                return

        total_received = 0

        async def limited_receive() -> Message:
            nonlocal total_received
            message = await receive()

            if message["type"] == "http.request":
                chunk = message.get("body", b"") or b""
                total_received += len(chunk)
                if total_received > self.max_body_size:
                    raise BodyTooLargeException()

            return message

        try:
            await self.app(scope, limited_receive, tracking_send)
        except BodyTooLargeException:
            if response_started:
                raise
            await reject("Body size limit exceeded")

    async def _drain_body(self, receive: Receive) -> None:
        """
        Best-effort drain of remaining request body with a strict timeout.
        Helps the client see a proper HTTP response instead of a TCP reset.
        """
        with anyio.move_on_after(self.drain_timeout_seconds):
            more_body = True
            while more_body:
                message = await receive()
                if message["type"] == "http.disconnect":
                    break
                more_body = bool(message.get("more_body", False))


class RateLimitMiddleware:
    """
    Token bucket per policy: login endpoints per client IP, API traffic per
    session when authenticated and per client IP otherwise.
    """

    def __init__(self, app: ASGIApp, registry: RateLimiterRegistry, settings: GatewaySettings):
        self.app = app
        self.registry = registry
        self.settings = settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.settings.rate_limit_enabled:
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        session: Session | None = scope.get("state", {}).get("session")
        authenticated = session is not None and session.is_authenticated

        policy = classify_request(connection.url.path, authenticated, self.settings)
        if policy is None:
            await self.app(scope, receive, send)
            return

        if authenticated:
            identity = f"session:{session.id}"
        else:
            client_ip = get_client_ip(connection, self.settings)
            if not client_ip:
                logger.warning("Could not determine client IP for rate limiting")
                await _send_json(
                    scope, receive, send, 400, "BAD_REQUEST",
                    "Unable to determine client IP for rate limiting.",
                )
                return
            identity = f"ip:{client_ip}"

        limiter = self.registry.limiter_for(policy)
        try:
            allowed = await limiter.allow(identity)
        except Exception as e:
            # the shared store being down must not take the gateway down with it
            logger.error(f"Error checking rate limit, allowing request: {e!r}")
            allowed = True

        if not allowed:
            logger.warning(f"Rate limit exceeded: policy={policy.name} key={identity[:24]}")
            exc = RateLimited()
            await _send_json(
                scope, receive, send, exc.status_code, exc.error_code, exc.message,
                headers={"Retry-After": str(limiter.retry_after_seconds)},
            )
            return

        await self.app(scope, receive, send)


class CSRFMiddleware:
    """
    Double-submit cookie protection.

    Every session carries a CSRF token that is mirrored into a cookie the
    browser app can read. State-changing requests must send it back in the
    CSRF header; header, cookie and session copy must all agree.
    """

    def __init__(self, app: ASGIApp, settings: GatewaySettings):
        self.app = app
        self.cookie_name = settings.csrf_cookie_name
        self.header_name = settings.csrf_header_name
        self.exempt_paths = frozenset(settings.csrf_exempt_paths)
        self.secure = settings.session_cookie_secure

    def _is_valid(self, connection: HTTPConnection, session: Session) -> bool:
        expected = session.get(CSRF_TOKEN_KEY)
        header = connection.headers.get(self.header_name)
        cookie = connection.cookies.get(self.cookie_name)
        if not expected or not header or not cookie:
            return False
        return secrets.compare_digest(header, expected) and secrets.compare_digest(cookie, expected)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        session: Session | None = scope.get("state", {}).get("session")
        if session is None:
            await self.app(scope, receive, send)
            return

        connection = HTTPConnection(scope)
        path = connection.url.path
        if path in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        if scope["method"] not in SAFE_METHODS and not self._is_valid(connection, session):
            logger.warning(f"CSRF validation failed for {scope['method']} {path}")
            exc = CSRFTokenInvalid()
            await _send_json(scope, receive, send, exc.status_code, exc.error_code, exc.message)
            return

        sent_cookie = connection.cookies.get(self.cookie_name)

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if session.invalidated:
                    if sent_cookie:
                        headers.append("Set-Cookie", self._cookie("", max_age=0))
                else:
                    token = session.get(CSRF_TOKEN_KEY)
                    if not token:
                        token = secrets.token_urlsafe(32)
                        session[CSRF_TOKEN_KEY] = token
                    if sent_cookie != token:
                        headers.append("Set-Cookie", self._cookie(token))
            await send(message)

        await self.app(scope, receive, send_wrapper)

    def _cookie(self, value: str, max_age: int | None = None) -> str:
        # readable by the browser app, so it can echo the token
        return build_cookie(self.cookie_name, value, max_age=max_age, httponly=False, secure=self.secure)
